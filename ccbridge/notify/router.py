"""
通知路由模块 - 把会话事件翻译成聊天消息并控制投递节奏。

【两类通知】
1. 流式输出（仅前台渠道）：
   - 助手文本按 (会话, 渠道) 缓冲，500ms 内没有新片段才合并成一条消息发出
   - 工具调用先冲刷该渠道的文本缓冲（保证顺序），再发一行 "🔧 工具名 — 摘要"
2. 里程碑（完成 / 预算耗尽 / 待输入）：
   - 先冲刷该会话的所有缓冲
   - 目标是前台渠道与发起渠道的并集（去重），保证两者各收到恰好一次
   - 待输入消息：前台渠道收到简短版本（已经看过输出），其他渠道附带最近输出预览

【长时间运行提醒】
后台循环每 60 秒扫描一次：活跃、无前台渠道、运行超过 10 分钟且未提醒过的会话，
向发起渠道发送一次提醒。

路由器不持有会话池，需要扫描时通过注入的 session_provider 获取会话列表。
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable

from loguru import logger

from ccbridge.notify.sink import MessageSink
from ccbridge.utils.helpers import format_cost, format_duration, tail_preview, truncate_string

if TYPE_CHECKING:
    from ccbridge.session.session import Session

# 工具输入中用于生成摘要的字段，按优先级排列
TOOL_SUMMARY_FIELDS = ("command", "file_path", "path", "pattern", "query", "url", "description", "prompt")
TOOL_SUMMARY_MAX_LEN = 80


def summarize_tool_input(tool_input: dict[str, Any] | None) -> str:
    """
    从工具输入中挑一个字段作为摘要。

    先按 TOOL_SUMMARY_FIELDS 的优先级查找，找不到时取第一个非空字符串字段，
    都没有则返回空字符串。
    """
    if not isinstance(tool_input, dict):
        return ""
    for key in TOOL_SUMMARY_FIELDS:
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            return truncate_string(value.strip().replace("\n", " "), TOOL_SUMMARY_MAX_LEN)
    for value in tool_input.values():
        if isinstance(value, str) and value.strip():
            return truncate_string(value.strip().replace("\n", " "), TOOL_SUMMARY_MAX_LEN)
    return ""


@dataclass
class _TextBuffer:
    """单个 (会话, 渠道) 的待发文本与防抖定时器。"""
    parts: list[str] = field(default_factory=list)
    timer: asyncio.Task | None = None


class NotificationRouter:
    """
    通知路由器。

    参数:
        sink: 消息出口
        debounce_s: 流式文本的合并窗口（秒）
        long_running_threshold_s: 长时间运行提醒阈值（秒）
        reminder_interval_s: 提醒扫描间隔（秒）
        fallback_channel: 渠道缺失或为 "unknown" 时的兜底渠道
        session_provider: 返回当前会话列表的回调（提醒扫描使用）
    """

    def __init__(
        self,
        sink: MessageSink,
        *,
        debounce_s: float = 0.5,
        long_running_threshold_s: float = 600,
        reminder_interval_s: float = 60,
        fallback_channel: str | None = None,
        session_provider: Callable[[], Iterable["Session"]] | None = None,
    ):
        self.sink = sink
        self.debounce_s = debounce_s
        self.long_running_threshold_s = long_running_threshold_s
        self.reminder_interval_s = reminder_interval_s
        self.fallback_channel = fallback_channel
        self.session_provider = session_provider
        self._buffers: dict[tuple[str, str], _TextBuffer] = {}
        self._reminded: set[str] = set()
        self._running = False
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # 流式输出
    # ------------------------------------------------------------------

    def on_assistant_text(self, session: "Session", text: str) -> None:
        """缓冲一段助手文本。没有前台渠道时直接丢弃。"""
        if not session.foreground_channels or not text:
            return
        for channel in session.foreground_channels:
            key = (session.id, channel)
            buf = self._buffers.setdefault(key, _TextBuffer())
            buf.parts.append(text)
            if buf.timer:
                buf.timer.cancel()
            buf.timer = asyncio.create_task(self._flush_later(key))

    def on_tool_use(self, session: "Session", name: str, tool_input: dict[str, Any]) -> None:
        """向前台渠道发送工具调用提示。"""
        if not session.foreground_channels:
            return
        summary = summarize_tool_input(tool_input)
        line = f"🔧 {name} — {summary}" if summary else f"🔧 {name}"
        for channel in sorted(session.foreground_channels):
            self._flush((session.id, channel))
            self.emit_to_channel(channel, line)

    async def _flush_later(self, key: tuple[str, str]) -> None:
        await asyncio.sleep(self.debounce_s)
        buf = self._buffers.get(key)
        if buf is not None:
            buf.timer = None
        self._flush(key)

    def _flush(self, key: tuple[str, str]) -> None:
        buf = self._buffers.pop(key, None)
        if buf is None:
            return
        if buf.timer:
            buf.timer.cancel()
        text = "".join(buf.parts)
        if text.strip():
            self.emit_to_channel(key[1], text)

    def flush_session(self, session_id: str) -> None:
        """立即冲刷某个会话在所有渠道上的缓冲。"""
        for key in [k for k in self._buffers if k[0] == session_id]:
            self._flush(key)

    def flush_all(self) -> None:
        for key in list(self._buffers):
            self._flush(key)

    # ------------------------------------------------------------------
    # 里程碑
    # ------------------------------------------------------------------

    def on_session_complete(self, session: "Session") -> None:
        status = session.status.value
        if status == "completed":
            text = f"✅ [{session.name}] Completed ({format_duration(session.duration_s)}, {format_cost(session.cost_usd)})"
        elif status == "killed":
            text = f"⛔ [{session.name}] Killed after {format_duration(session.duration_s)}"
        else:
            text = f"❌ [{session.name}] Failed" + (f": {session.error}" if session.error else "")
        self._deliver_milestone(session, lambda is_fg: text)

    def on_budget_exhausted(self, session: "Session") -> None:
        budget = f" of {format_cost(session.max_budget_usd)}" if session.max_budget_usd else ""
        text = f"💰 [{session.name}] Budget exhausted ({format_cost(session.cost_usd)}{budget} spent)"
        self._deliver_milestone(session, lambda is_fg: text)

    def on_waiting_for_input(self, session: "Session") -> None:
        def render(is_fg: bool) -> str:
            header = f"💬 [{session.name}] Waiting for input"
            if is_fg:
                return header
            preview = tail_preview(session.get_output(5))
            lines = [header]
            if preview.strip():
                lines += ["", preview]
            lines += ["", f"Reply with claude_respond(session='{session.name}') or watch with claude_fg."]
            return "\n".join(lines)

        self._deliver_milestone(session, render)

    def _deliver_milestone(self, session: "Session", render: Callable[[bool], str]) -> None:
        """冲刷缓冲后，向前台渠道与发起渠道的并集各发一次。"""
        self.flush_session(session.id)
        sent: set[str] = set()
        targets = sorted(session.foreground_channels) + [session.origin_channel]
        for channel in targets:
            target = self._resolve_channel(channel)
            if target is None or target in sent:
                continue
            sent.add(target)
            self._send(target, render(channel in session.foreground_channels))
        self.forget_session(session.id)

    # ------------------------------------------------------------------
    # 长时间运行提醒
    # ------------------------------------------------------------------

    def scan_long_running(self, now: float | None = None) -> int:
        """
        扫描一次需要提醒的会话。

        返回:
            本次发出的提醒数
        """
        if self.session_provider is None:
            return 0
        now = time.time() if now is None else now
        count = 0
        for session in self.session_provider():
            if not session.is_active or session.foreground_channels or session.id in self._reminded:
                continue
            elapsed = now - session.started_at
            if elapsed <= self.long_running_threshold_s:
                continue
            self._reminded.add(session.id)
            self.emit_to_channel(
                session.origin_channel,
                f"⏱️ [{session.name}] Still running after {format_duration(elapsed)}. "
                f"Use claude_fg(session='{session.name}') to watch it.",
            )
            count += 1
        return count

    async def start(self) -> None:
        """启动提醒扫描循环。"""
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Long-running reminder scan started (every {self.reminder_interval_s}s)")

    def stop(self) -> None:
        """停止扫描循环并冲刷所有缓冲。"""
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None
        self.flush_all()

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.reminder_interval_s)
                if self._running:
                    self.scan_long_running()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Reminder scan error: {e}")

    # ------------------------------------------------------------------
    # 投递
    # ------------------------------------------------------------------

    def forget_session(self, session_id: str) -> None:
        """丢弃会话的缓冲（不发送）与提醒标记。"""
        for key in [k for k in self._buffers if k[0] == session_id]:
            buf = self._buffers.pop(key)
            if buf.timer:
                buf.timer.cancel()
        self._reminded.discard(session_id)

    def emit_to_channel(self, channel: str | None, text: str) -> bool:
        """
        向一个渠道发送消息。

        渠道缺失或为 "unknown" 时使用兜底渠道；没有兜底渠道则记录日志后丢弃。

        返回:
            是否交给了消息出口
        """
        target = self._resolve_channel(channel)
        if target is None:
            logger.warning(f"No channel to deliver notification, dropping: {truncate_string(text, 60)}")
            return False
        return self._send(target, text)

    def _resolve_channel(self, channel: str | None) -> str | None:
        if not channel or channel == "unknown":
            return self.fallback_channel
        return channel

    def _send(self, channel: str, text: str) -> bool:
        try:
            self.sink.send(channel, text)
        except Exception as e:
            logger.warning(f"Failed to deliver notification to {channel}: {e}")
            return False
        return True

    @property
    def pending_buffers(self) -> int:
        return len(self._buffers)
