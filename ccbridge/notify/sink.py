"""
消息出口（MessageSink）。

通知路由只依赖一个能力：send(channel_id, text)，即发即忘。
- BusMessageSink：拆分渠道地址后发布到消息总线，由渠道订阅者真正发送
  （命令行模式下订阅者就是终端打印）
"""

from abc import ABC, abstractmethod

from loguru import logger

from ccbridge.bus.events import OutboundMessage, parse_channel_address
from ccbridge.bus.queue import MessageBus
from ccbridge.errors import DeliveryError


class MessageSink(ABC):
    """
    消息出口抽象基类。

    send() 不等待投递结果；无法投递时抛出 DeliveryError，
    由调用方（通知路由）记录日志后丢弃。
    """

    @abstractmethod
    def send(self, channel_id: str, text: str) -> None:
        pass


class BusMessageSink(MessageSink):
    """把通知发布为消息总线上的 OutboundMessage。"""

    def __init__(self, bus: MessageBus):
        self.bus = bus

    def send(self, channel_id: str, text: str) -> None:
        parsed = parse_channel_address(channel_id)
        if parsed is None:
            raise DeliveryError(f"Invalid channel address: {channel_id!r}")
        channel, account_id, chat_id = parsed
        self.bus.publish_outbound_nowait(OutboundMessage(
            channel=channel,
            chat_id=chat_id,
            content=text,
            account_id=account_id,
        ))
        logger.debug(f"Queued notification for {channel}:{chat_id} ({len(text)} chars)")

