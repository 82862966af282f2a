"""
工具函数集合 - ccbridge 项目全局通用的辅助函数。

函数分类：
- 路径管理：ensure_dir, get_data_path
- 字符串工具：truncate_string, generate_session_name, tail_preview
- 格式化工具：format_duration, format_cost
- ID 工具：new_session_id, looks_like_claude_session_id
"""

import re
import uuid
from pathlib import Path

# Claude 会话 ID 的形态（标准 UUID）
_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

# 生成会话名时忽略的常见虚词
_STOP_WORDS = {
    "a", "an", "the", "and", "or", "to", "of", "in", "on", "for", "with",
    "please", "can", "you", "could", "would", "me", "my", "this", "that", "it",
}


def ensure_dir(path: Path) -> Path:
    """
    确保目录存在，不存在则递归创建。

    参数:
        path: 目标目录路径

    返回:
        创建后的目录路径（原样返回）
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """获取 ccbridge 数据目录（~/.ccbridge）。自动创建不存在的目录。"""
    return ensure_dir(Path.home() / ".ccbridge")


def new_session_id() -> str:
    """生成 8 位短会话 ID，方便在日志和聊天消息中引用。"""
    return uuid.uuid4().hex[:8]


def looks_like_claude_session_id(ref: str) -> bool:
    """判断字符串是否具有 Claude 会话 ID（UUID）的形态。"""
    return bool(_UUID_RE.match(ref))


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """
    截断字符串，超出 max_len 时保留前 max_len 个字符并追加后缀。

    参数:
        s: 原始字符串
        max_len: 保留的最大字符数（不含后缀），默认 100
        suffix: 截断后缀，默认 "..."

    返回:
        截断后的字符串
    """
    if len(s) <= max_len:
        return s
    return s[:max_len] + suffix


def tail_preview(lines: list[str], max_chars: int = 500) -> str:
    """把若干行输出拼接为预览文本，超长时只保留末尾 max_chars 个字符。"""
    preview = "\n".join(lines)
    if len(preview) > max_chars:
        preview = preview[-max_chars:]
    return preview


def generate_session_name(prompt: str, max_words: int = 3, max_len: int = 30) -> str:
    """
    根据任务描述生成一个简短的 kebab-case 会话名。

    例: "Fix the login bug in auth module" → "fix-login-bug"

    参数:
        prompt: 任务描述文本
        max_words: 最多取几个有效单词
        max_len: 名称最大长度

    返回:
        会话名；提取不到有效单词时返回 "session"
    """
    words = re.findall(r"[a-z0-9]+", prompt.lower())
    picked = [w for w in words if w not in _STOP_WORDS][:max_words]
    if not picked:
        picked = words[:max_words]
    name = "-".join(picked)[:max_len].strip("-")
    return name or "session"


def format_duration(seconds: float) -> str:
    """把秒数格式化为 "1h 2m" / "3m 12s" / "45s" 形式。"""
    total = int(max(seconds, 0))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_cost(cost_usd: float | None) -> str:
    """格式化美元成本，保留 4 位小数。"""
    return f"${(cost_usd or 0.0):.4f}"
