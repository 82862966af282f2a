"""
消息事件类型定义模块 - 定义消息总线中传输的数据结构。

- InboundMessage：入站消息（发给编排 Agent，例如会话完成后的唤醒通知）
- OutboundMessage：出站消息（发往聊天渠道，例如会话输出、里程碑通知）

渠道地址约定：
    ccbridge 内部用 "channel|chat_id" 或 "channel|account_id|chat_id"
    形式的字符串标识一个观察者渠道，parse_channel_address() 负责拆分。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class InboundMessage:
    """
    入站消息 - 投递给编排 Agent 的消息。

    属性:
        channel: 消息来源渠道标识（唤醒通知固定为 "system"）
        sender_id: 发送者标识（如 "ccbridge"）
        chat_id: 结果应回复到的会话标识（格式 "channel:chat_id"）
        content: 消息正文
        timestamp: 消息时间戳
        metadata: 附加数据（如目标 agent_id、会话 ID）
    """

    channel: str
    sender_id: str
    chat_id: str
    content: str
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class OutboundMessage:
    """
    出站消息 - 要发送到聊天渠道的通知。

    属性:
        channel: 目标渠道标识（如 "telegram"）
        chat_id: 目标聊天标识
        content: 消息文本
        account_id: 可选的发送账号（多账号渠道使用）
        metadata: 附加数据
    """

    channel: str
    chat_id: str
    content: str
    account_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def parse_channel_address(address: str) -> tuple[str, str | None, str] | None:
    """
    拆分渠道地址字符串。

    "telegram|123"          → ("telegram", None, "123")
    "telegram|bot1|123"     → ("telegram", "bot1", "123")
    "telegram|bot1|a|b"     → ("telegram", "bot1", "a|b")（目标本身可能含有 "|"）

    返回:
        (channel, account_id, chat_id)；格式无效时返回 None
    """
    parts = address.split("|")
    if len(parts) < 2 or not parts[0]:
        return None
    if len(parts) == 2:
        return parts[0], None, parts[1]
    return parts[0], parts[1] or None, "|".join(parts[2:])
