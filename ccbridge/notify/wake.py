"""
代理唤醒模块 - 在会话需要编排 Agent 关注时通知它。

两种投递方式：
- deliver(agent_id, text, channel_hint)：定向唤醒某个 Agent，即发即忘，不重试
- deliver_broadcast(text)：不知道负责的 Agent 时广播一条系统事件，
  有固定超时，失败后延迟重试恰好一次

两种实现：
- CliWakeDispatcher：调用 openclaw CLI（`openclaw agent` / `openclaw system event`）
- BusWakeDispatcher：在进程内消息总线上发布 system 渠道的入站消息
  （与子 Agent 完成后向主 Agent 汇报的方式相同）

调用方从不等待唤醒完成，所有失败只记录日志。
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Coroutine

from loguru import logger

from ccbridge.bus.events import InboundMessage, parse_channel_address
from ccbridge.bus.queue import MessageBus
from ccbridge.errors import DeliveryError


def build_deliver_args(channel_hint: str | None) -> list[str]:
    """
    把发起渠道转换为 openclaw agent 的 --deliver 参数，让 Agent 的回复直接发回该渠道。

    "telegram|bot1|123" → --deliver --reply-channel telegram --reply-account bot1 --reply-to 123
    "telegram|123"      → --deliver --reply-channel telegram --reply-to 123
    缺失、"unknown"、"gateway" 或格式无效时返回空列表。
    """
    if not channel_hint or channel_hint in ("unknown", "gateway"):
        return []
    parsed = parse_channel_address(channel_hint)
    if parsed is None:
        return []
    channel, account_id, chat_id = parsed
    args = ["--deliver", "--reply-channel", channel]
    if account_id:
        args += ["--reply-account", account_id]
    return args + ["--reply-to", chat_id]


class WakeDispatcher(ABC):
    """代理唤醒分发器抽象基类。"""

    @abstractmethod
    def deliver(self, agent_id: str, text: str, channel_hint: str | None = None) -> None:
        """定向唤醒一个 Agent。"""
        pass

    @abstractmethod
    def deliver_broadcast(self, text: str) -> None:
        """广播唤醒（失败后重试一次）。"""
        pass

    def cancel_pending(self) -> None:
        """取消尚未完成的广播与重试（关闭时调用）。"""
        pass


class CliWakeDispatcher(WakeDispatcher):
    """
    基于 openclaw CLI 的唤醒分发器。

    参数:
        cli_path: openclaw 可执行文件
        timeout_s: 广播子进程的超时（秒）
        retry_delay_s: 广播失败后的重试延迟（秒）
    """

    def __init__(self, cli_path: str = "openclaw", timeout_s: float = 30.0, retry_delay_s: float = 5.0):
        self.cli_path = cli_path
        self.timeout_s = timeout_s
        self.retry_delay_s = retry_delay_s
        self._broadcasts: set[asyncio.Task] = set()
        self._reapers: set[asyncio.Task] = set()

    def deliver(self, agent_id: str, text: str, channel_hint: str | None = None) -> None:
        args = [self.cli_path, "agent", "--agent", agent_id, "--message", text, *build_deliver_args(channel_hint)]
        self._track(self._reapers, self._spawn_detached(args, agent_id))

    def deliver_broadcast(self, text: str) -> None:
        self._track(self._broadcasts, self._broadcast(text))

    def cancel_pending(self) -> None:
        for task in list(self._broadcasts):
            task.cancel()
        self._broadcasts.clear()

    @property
    def pending(self) -> int:
        return len(self._broadcasts)

    def _track(self, tasks: set[asyncio.Task], coro: Coroutine) -> None:
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def _spawn_detached(self, args: list[str], agent_id: str) -> None:
        """启动独立进程组中的唤醒进程，不等待 Agent 处理完成，只负责回收子进程。"""
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to spawn wake for agent={agent_id}: {e}")
            return
        logger.info(f"Spawned detached wake for agent={agent_id} (pid={process.pid}, deliver={'--deliver' in args})")
        await process.wait()

    async def _broadcast(self, text: str) -> None:
        args = [self.cli_path, "system", "event", "--text", text, "--mode", "now"]
        try:
            await self._run(args)
        except DeliveryError as e:
            logger.error(f"System event failed: {e}")
            logger.warning(f"Retrying system event in {self.retry_delay_s}s")
            await asyncio.sleep(self.retry_delay_s)
            try:
                await self._run(args)
            except DeliveryError as retry_error:
                logger.error(f"System event retry also failed: {retry_error}")
                return
            logger.info("System event retry succeeded")
            return
        logger.info("System event sent")

    async def _run(self, args: list[str]) -> None:
        """运行一次 CLI 命令，超时或非零退出码时抛出 DeliveryError。"""
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise DeliveryError(f"cannot run {args[0]}: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise DeliveryError(f"timed out after {self.timeout_s}s")

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise DeliveryError(f"exit code {process.returncode}" + (f": {detail}" if detail else ""))


class BusWakeDispatcher(WakeDispatcher):
    """
    基于消息总线的唤醒分发器。

    唤醒内容作为 channel="system" 的入站消息发布，chat_id 指向结果应回复的渠道
    （"channel:chat_id"），编排 Agent 处理后把回复路由回去。
    """

    def __init__(self, bus: MessageBus, sender_id: str = "ccbridge"):
        self.bus = bus
        self.sender_id = sender_id

    def deliver(self, agent_id: str, text: str, channel_hint: str | None = None) -> None:
        self._publish(text, channel_hint, {"agent_id": agent_id})

    def deliver_broadcast(self, text: str) -> None:
        self._publish(text, None, {"broadcast": True})

    def _publish(self, text: str, channel_hint: str | None, metadata: dict) -> None:
        parsed = parse_channel_address(channel_hint) if channel_hint else None
        chat_id = f"{parsed[0]}:{parsed[2]}" if parsed else "cli:direct"
        self.bus.publish_inbound_nowait(InboundMessage(
            channel="system",
            sender_id=self.sender_id,
            chat_id=chat_id,
            content=text,
            metadata=metadata,
        ))
        logger.debug(f"Published wake to system channel (chat_id={chat_id})")
