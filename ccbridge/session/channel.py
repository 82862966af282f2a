"""
多轮输入通道模块。

MessageChannel 是一个单生产者/单消费者的无界异步通道：
- 会话（生产者）通过 send() 放入用户的后续消息
- Agent 后端（消费者）通过 async for 惰性读取：队列为空时挂起，
  有新消息或通道关闭时恢复
- close() 之后迭代结束，后端得以正常收尾而不会一直挂起

【Java 开发者类比】
相当于 LinkedBlockingQueue + 毒丸（poison pill）关闭约定。
"""

import asyncio
from typing import AsyncIterator

from ccbridge.errors import InvalidTransitionError

# 关闭哨兵（毒丸）
_CLOSED = object()


class MessageChannel:
    """多轮会话的后续消息通道。"""

    def __init__(self, initial: str | None = None):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        if initial is not None:
            self._queue.put_nowait(initial)

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: str) -> None:
        """放入一条消息。通道关闭后拒绝写入。"""
        if self._closed:
            raise InvalidTransitionError("Message channel is closed")
        self._queue.put_nowait(message)

    def close(self) -> None:
        """关闭通道（幂等）。已排队的消息仍会被读出，随后迭代结束。"""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
