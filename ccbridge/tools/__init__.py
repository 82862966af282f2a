"""
工具模块 - 编排 Agent 操控 Claude Code 会话的 Function Calling 工具。
"""

from ccbridge.tools.base import Tool
from ccbridge.tools.registry import ToolRegistry
from ccbridge.tools.sessions import SESSION_TOOLS, SessionTool, create_session_tools

__all__ = ["Tool", "ToolRegistry", "SessionTool", "SESSION_TOOLS", "create_session_tools"]
