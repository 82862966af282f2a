"""
会话模块 - Claude Code 会话的生命周期管理。

- types.py：状态枚举、启动参数、快照与统计的数据模型
- channel.py：多轮输入通道
- session.py：单个会话的状态机、定时器、输出缓冲
- store.py：已结束会话的快照存储
- metrics.py：全局统计
- manager.py：会话池与对外通知
"""

from ccbridge.session.channel import MessageChannel
from ccbridge.session.manager import SessionManager
from ccbridge.session.session import Session, SessionListener
from ccbridge.session.store import PersistedSessionStore
from ccbridge.session.types import (
    PersistedSession,
    SessionConfig,
    SessionMetrics,
    SessionStatus,
)

__all__ = [
    "MessageChannel",
    "PersistedSession",
    "PersistedSessionStore",
    "Session",
    "SessionConfig",
    "SessionListener",
    "SessionManager",
    "SessionMetrics",
    "SessionStatus",
]
