"""
异步消息队列模块 - 消息总线的核心实现。

采用生产者-消费者模式，基于 Python asyncio.Queue 实现异步消息传递：

入站流程（ccbridge → 编排 Agent）：
  唤醒分发器 → publish_inbound_nowait() → inbound 队列 → consume_inbound() → Agent

出站流程（ccbridge → 聊天渠道）：
  消息出口 → publish_outbound_nowait() → outbound 队列 → dispatch_outbound() → 渠道回调

【Java 开发者类比】
- asyncio.Queue 类似于 Java 的 LinkedBlockingQueue
- subscribe_outbound + dispatch_outbound 类似于 Spring 的 @EventListener 机制
"""

import asyncio
from typing import Callable, Awaitable

from loguru import logger

from ccbridge.bus.events import InboundMessage, OutboundMessage


class MessageBus:
    """
    异步消息总线 - 解耦会话核心与聊天渠道/编排 Agent 的通信中枢。

    属性:
        inbound: 入站消息异步队列（→ 编排 Agent）
        outbound: 出站消息异步队列（→ 聊天渠道）
        _outbound_subscribers: 出站消息订阅者字典 {渠道名: [回调函数列表]}
        _running: 分发器运行状态标志
    """

    def __init__(self):
        self.inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self.outbound: asyncio.Queue[OutboundMessage] = asyncio.Queue()
        self._outbound_subscribers: dict[str, list[Callable[[OutboundMessage], Awaitable[None]]]] = {}
        self._running = False

    def publish_inbound_nowait(self, msg: InboundMessage) -> None:
        """同步发布入站消息（供唤醒分发器等同步调用方使用）。"""
        self.inbound.put_nowait(msg)

    async def consume_inbound(self) -> InboundMessage:
        """消费下一条入站消息（队列为空时异步阻塞）。"""
        return await self.inbound.get()

    def publish_outbound_nowait(self, msg: OutboundMessage) -> None:
        """
        同步发布出站消息。

        出站队列无界，put_nowait 永远不会阻塞，
        供不能 await 的同步调用方（如通知路由）使用。
        """
        self.outbound.put_nowait(msg)

    def subscribe_outbound(
        self,
        channel: str,
        callback: Callable[[OutboundMessage], Awaitable[None]]
    ) -> None:
        """
        订阅指定渠道的出站消息。

        参数:
            channel: 渠道名称（如 'telegram'），"*" 表示订阅所有渠道
            callback: 异步回调函数，接收 OutboundMessage 参数
        """
        self._outbound_subscribers.setdefault(channel, []).append(callback)

    async def dispatch_outbound(self) -> None:
        """
        出站消息分发器（后台常驻任务）。

        持续从 outbound 队列中取出消息，调用对应渠道及 "*" 的订阅者回调。
        使用 1 秒的 wait_for 超时，确保 stop() 之后能及时退出。
        单个回调的异常只记录日志，不中断分发循环。
        """
        self._running = True
        while self._running:
            try:
                msg = await asyncio.wait_for(self.outbound.get(), timeout=1.0)
                subscribers = self._outbound_subscribers.get(msg.channel, []) + self._outbound_subscribers.get("*", [])
                for callback in subscribers:
                    try:
                        await callback(msg)
                    except Exception as e:
                        logger.error(f"Error dispatching to {msg.channel}: {e}")
            except asyncio.TimeoutError:
                continue

    def stop(self) -> None:
        """停止出站消息分发器（循环在下次超时检查时退出）。"""
        self._running = False

    @property
    def outbound_size(self) -> int:
        """待分发的出站消息数量。"""
        return self.outbound.qsize()
