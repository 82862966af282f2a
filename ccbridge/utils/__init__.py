"""
工具函数模块 - 提供 ccbridge 项目全局通用的辅助函数。
"""

from ccbridge.utils.helpers import (
    ensure_dir,
    format_cost,
    format_duration,
    generate_session_name,
    get_data_path,
    truncate_string,
)

__all__ = [
    "ensure_dir",
    "format_cost",
    "format_duration",
    "generate_session_name",
    "get_data_path",
    "truncate_string",
]
