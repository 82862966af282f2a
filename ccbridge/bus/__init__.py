"""
消息总线模块 - 实现会话核心与聊天渠道、编排 Agent 之间的解耦通信。

消息流向：
  会话通知 → OutboundMessage → 消息总线 → 渠道订阅者 → 用户
  代理唤醒 → InboundMessage → 消息总线 → 编排 Agent
"""

from ccbridge.bus.events import InboundMessage, OutboundMessage, parse_channel_address
from ccbridge.bus.queue import MessageBus

__all__ = ["MessageBus", "InboundMessage", "OutboundMessage", "parse_channel_address"]
