"""
通知模块 - 会话事件到聊天消息与代理唤醒的出口。

- sink.py：消息出口（send(channel_id, text)）
- router.py：防抖、前台/发起渠道扇出、长时间运行提醒
- wake.py：编排 Agent 唤醒（openclaw CLI 或消息总线）
"""

from ccbridge.notify.router import NotificationRouter, summarize_tool_input
from ccbridge.notify.sink import BusMessageSink, MessageSink
from ccbridge.notify.wake import BusWakeDispatcher, CliWakeDispatcher, WakeDispatcher

__all__ = [
    "NotificationRouter",
    "summarize_tool_input",
    "MessageSink",
    "BusMessageSink",
    "WakeDispatcher",
    "CliWakeDispatcher",
    "BusWakeDispatcher",
]
