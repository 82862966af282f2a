"""
会话模块 - 单个 Claude Code 会话的状态机、定时器与输出缓冲。

【状态机】
    starting ──init──▶ running ──terminal result──▶ completed / failed
        │                 │ ▲
        │                 └─┘ 多轮模式下的回合结束（success result）：保持 running
        └────────kill()────────▶ killed

    - 事件流在 init 之前抛异常：failed
    - kill() 是进入 killed 的唯一途径；被终止的会话不会触发 on_complete，
      完成后的收尾（统计、持久化、通知）由调用方负责

【两个独立定时器】
    - 空闲定时器（仅多轮，默认 30 分钟）：窗口内既无后续消息也无回合结束 → 触发 on_idle_timeout
    - 卡顿看门狗（默认 15 秒）：事件流在窗口内没有任何事件 → 发出一次"待输入"信号

【输出缓冲】
    每个文本片段追加到有界历史（默认 200 条，先进先出淘汰）；
    每个前台渠道有一个书签，记录已看过的位置，切到前台时只补发未看过的部分。

【Java 开发者类比】
    Session 类似于一个带状态机的 Actor：所有状态变更都发生在同一个事件循环上，
    定时器重置与事件处理天然串行，不需要加锁。
"""

import asyncio
import time
from typing import Any, Callable

from loguru import logger

from ccbridge.backend.base import BUDGET_EXHAUSTED_SUBTYPE, AgentBackend, AgentEvent, AgentRun, RunOptions
from ccbridge.errors import BudgetExhaustedError, InvalidTransitionError
from ccbridge.session.channel import MessageChannel
from ccbridge.session.types import SessionConfig, SessionStatus
from ccbridge.utils.helpers import format_cost, new_session_id

DEFAULT_IDLE_TIMEOUT_S = 30 * 60
DEFAULT_STALL_TIMEOUT_S = 15.0
DEFAULT_OUTPUT_CAPACITY = 200


class SessionListener:
    """
    会话事件监听器。

    会话在构造时注入监听器，所有回调的第一个参数都是会话本身。
    默认实现全部为空操作（on_idle_timeout 除外：默认直接终止会话），
    子类只需覆盖关心的回调。

    触发次数约定：
    - on_complete：每次非 kill 的终态转换恰好一次
    - on_waiting_for_input：每个回合结束时一次；回合中途停顿也会触发一次，
      之后若继续输出，回合结束时会再触发
    - on_budget_exhausted：预算耗尽时一次，紧接着触发 on_complete
    """

    def on_output(self, session: "Session", text: str) -> None:
        pass

    def on_tool_use(self, session: "Session", name: str, tool_input: dict[str, Any]) -> None:
        pass

    def on_budget_exhausted(self, session: "Session") -> None:
        pass

    def on_waiting_for_input(self, session: "Session") -> None:
        pass

    def on_complete(self, session: "Session") -> None:
        pass

    def on_idle_timeout(self, session: "Session") -> None:
        session.kill(reason="idle timeout")


class Session:
    """
    单个 Claude Code 会话。

    属性:
        id: 8 位会话 ID
        name: 会话名（在会话池内唯一）
        status: 当前状态
        claude_session_id: Claude 侧的会话 ID（首个 init 事件后才有，最多设置一次）
        foreground_channels: 正在实时观看输出的渠道集合
        auto_respond_count: 编排 Agent 连续自动回复的次数
        cost_usd: 累计成本
        error: 最近一次错误
        budget_exhausted: 是否因预算耗尽而结束
    """

    def __init__(
        self,
        config: SessionConfig,
        name: str,
        backend: AgentBackend,
        listener: SessionListener | None = None,
        *,
        idle_timeout_s: float = DEFAULT_IDLE_TIMEOUT_S,
        stall_timeout_s: float = DEFAULT_STALL_TIMEOUT_S,
        output_capacity: int = DEFAULT_OUTPUT_CAPACITY,
        session_id: str | None = None,
    ):
        self.id = session_id or new_session_id()
        self.name = name
        self.prompt = config.prompt
        self.workdir = config.workdir
        self.model = config.model
        self.max_budget_usd = config.max_budget_usd
        self.origin_channel = config.origin_channel
        self.origin_agent_id = config.origin_agent_id
        self.multi_turn = config.multi_turn
        self.options = RunOptions(
            workdir=config.workdir,
            model=config.model,
            max_budget_usd=config.max_budget_usd,
            permission_mode=config.permission_mode,
            resume_session_id=config.resume_session_id,
            fork_session=config.fork_session,
            system_prompt=config.system_prompt,
            allowed_tools=config.allowed_tools,
        )

        self.status = SessionStatus.STARTING
        self.claude_session_id: str | None = None
        self.started_at = time.time()
        self.completed_at: float | None = None
        self.cost_usd = 0.0
        self.error: str | None = None
        self.kill_reason: str | None = None
        self.budget_exhausted = False
        self.auto_respond_count = 0

        self.foreground_channels: set[str] = set()
        self._fg_offsets: dict[str, int] = {}
        self._output: list[str] = []
        self._output_capacity = output_capacity

        self._backend = backend
        self._listener = listener or SessionListener()
        self._idle_timeout_s = idle_timeout_s
        self._stall_timeout_s = stall_timeout_s
        self._idle_task: asyncio.Task | None = None
        self._stall_task: asyncio.Task | None = None
        self._waiting_signalled = False

        # 多轮模式：首条提示词先入队，后端惰性读取后续消息
        self._channel = MessageChannel(initial=config.prompt) if config.multi_turn else None
        self._run: AgentRun | None = None
        self._consumer: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # 状态查询
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def waiting_for_input(self) -> bool:
        """当前回合已结束（或卡住），正在等待后续消息。"""
        return self.status is SessionStatus.RUNNING and self._waiting_signalled

    @property
    def duration_s(self) -> float:
        """运行时长（秒）。未结束时计算到当前时刻。"""
        return (self.completed_at or time.time()) - self.started_at

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    def start(self) -> None:
        """启动事件流消费任务后立即返回，不等待第一个事件。"""
        if self._consumer is not None:
            raise InvalidTransitionError(f"Session {self.name} [{self.id}] already started")
        self._consumer = asyncio.create_task(self._consume(), name=f"session:{self.id}")
        logger.info(f"Session [{self.id}] {self.name} starting in {self.workdir}")

    async def _consume(self) -> None:
        """
        事件流消费主循环。

        - 被 kill 引起的中止（取消或流异常）视为正常结束
        - 其他异常：会话进入 failed，记录错误
        - 流正常结束但没有终态结果：running → completed，starting → failed
        """
        prompt = self._channel if self._channel is not None else self.prompt
        try:
            self._run = await self._backend.start(prompt, self.options)
            if self.status is SessionStatus.KILLED:
                self._run.abort()
                return
            async for event in self._run.events():
                if self.is_terminal:
                    break
                self._handle_event(event)
                if self.is_terminal:
                    break
        except asyncio.CancelledError:
            if self.status is SessionStatus.KILLED:
                return
            raise
        except Exception as e:
            if self.status is SessionStatus.KILLED:
                logger.debug(f"Session [{self.id}] stream ended after kill: {e}")
                return
            logger.error(f"Session [{self.id}] stream failed: {e}")
            if not self.is_terminal:
                self._finish(SessionStatus.FAILED, error=str(e) or type(e).__name__)
            return

        if not self.is_terminal:
            if self.status is SessionStatus.RUNNING:
                self._finish(SessionStatus.COMPLETED)
            else:
                self._finish(SessionStatus.FAILED, error="Stream ended before initialization")

    def _handle_event(self, event: AgentEvent) -> None:
        """按到达顺序处理单个事件。"""
        if event.kind == "init":
            session_id = event.payload.get("session_id")
            if self.claude_session_id is None and session_id:
                self.claude_session_id = session_id
            if self.status is SessionStatus.STARTING:
                self.status = SessionStatus.RUNNING
                logger.info(f"Session [{self.id}] running (claude_session_id={self.claude_session_id})")
                if self.multi_turn:
                    self._reset_idle_timer()
            self._reset_stall_watchdog()

        elif event.kind == "text":
            self._on_stream_activity()
            text = event.payload.get("text") or ""
            if text:
                self.append_output(text)
                self._notify("on_output", text)

        elif event.kind == "tool_use":
            self._on_stream_activity()
            self._notify("on_tool_use", event.payload.get("name", "?"), event.payload.get("input") or {})

        elif event.kind == "result":
            self._handle_result(event.payload)

    def _handle_result(self, payload: dict[str, Any]) -> None:
        if payload.get("total_cost_usd") is not None:
            self.cost_usd = float(payload["total_cost_usd"])
        if self.status is SessionStatus.STARTING:
            self.status = SessionStatus.RUNNING

        subtype = payload.get("subtype", "success")
        success = subtype == "success" and not payload.get("is_error")

        # 多轮模式下的回合结束：保持 running，等待下一条消息
        if success and self._channel is not None and not self._channel.closed:
            logger.debug(f"Session [{self.id}] turn complete ({format_cost(self.cost_usd)})")
            self._reset_idle_timer()
            self._clear_stall_watchdog()
            self._signal_waiting()
            return

        if success:
            self._finish(SessionStatus.COMPLETED)
            return

        if subtype == BUDGET_EXHAUSTED_SUBTYPE:
            self.budget_exhausted = True
            self._finish(SessionStatus.FAILED, error=str(BudgetExhaustedError(self.cost_usd, self.max_budget_usd)))
            return

        errors = payload.get("errors") or []
        detail = "; ".join(str(e) for e in errors) or payload.get("result") or subtype
        self._finish(SessionStatus.FAILED, error=str(detail))

    def _finish(self, status: SessionStatus, error: str | None = None) -> None:
        """进入 completed/failed 终态：清理定时器、关闭输入通道、触发一次 on_complete。"""
        self.status = status
        self.completed_at = time.time()
        if error:
            self.error = error
        self._clear_timers()
        if self._channel is not None:
            self._channel.close()
        logger.info(f"Session [{self.id}] {status.value} ({format_cost(self.cost_usd)})")
        if self.budget_exhausted:
            self._notify("on_budget_exhausted")
        self._notify("on_complete")

    def kill(self, reason: str | None = None) -> bool:
        """
        终止会话。

        中止事件流、清理所有定时器、记录完成时间。不会触发 on_complete。

        返回:
            True 表示本次调用终止了会话；会话已处于终态时返回 False
        """
        if self.is_terminal:
            return False
        self.status = SessionStatus.KILLED
        self.completed_at = time.time()
        self.kill_reason = reason
        self._clear_timers()
        if self._channel is not None:
            self._channel.close()
        if self._run is not None:
            try:
                self._run.abort()
            except Exception as e:
                logger.error(f"Session [{self.id}] abort failed: {e}")
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()
        logger.info(f"Session [{self.id}] killed" + (f" ({reason})" if reason else ""))
        return True

    # ------------------------------------------------------------------
    # 多轮输入
    # ------------------------------------------------------------------

    def send_message(self, text: str) -> None:
        """
        向运行中的多轮会话发送一条后续消息。

        异常:
            InvalidTransitionError: 会话不在 running 状态，或不是多轮会话
        """
        if self.status is not SessionStatus.RUNNING:
            raise InvalidTransitionError(
                f"Session {self.name} [{self.id}] is not running (status: {self.status.value})"
            )
        if self._channel is None:
            raise InvalidTransitionError(f"Session {self.name} [{self.id}] is single-turn and accepts no follow-ups")
        self._channel.send(text)
        self._waiting_signalled = False
        self._reset_idle_timer()
        self._reset_stall_watchdog()
        logger.debug(f"Session [{self.id}] follow-up queued ({len(text)} chars)")

    async def interrupt(self) -> None:
        """打断当前回合。"""
        if self.status is not SessionStatus.RUNNING or self._run is None:
            raise InvalidTransitionError(f"Session {self.name} [{self.id}] is not running")
        await self._run.interrupt()

    def end_input(self) -> None:
        """关闭多轮输入通道，事件流处理完剩余内容后会话正常结束。"""
        if self._channel is not None:
            self._channel.close()

    # ------------------------------------------------------------------
    # 输出缓冲与前台书签
    # ------------------------------------------------------------------

    def append_output(self, text: str) -> None:
        self._output.append(text)
        overflow = len(self._output) - self._output_capacity
        if overflow > 0:
            del self._output[:overflow]
            # 书签随淘汰整体前移，保证不超过当前长度
            for channel, offset in self._fg_offsets.items():
                self._fg_offsets[channel] = max(0, offset - overflow)

    def get_output(self, lines: int | None = None) -> list[str]:
        """获取输出历史。lines 指定时只返回最后 lines 条。"""
        if lines is None:
            return list(self._output)
        if lines <= 0:
            return []
        return self._output[-lines:]

    def get_catchup_output(self, channel: str) -> list[str]:
        """获取该渠道尚未看过的输出（书签到末尾）。"""
        return self._output[self._fg_offsets.get(channel, 0):]

    def mark_fg_output_seen(self, channel: str) -> None:
        """把该渠道的书签推进到当前末尾。"""
        self._fg_offsets[channel] = len(self._output)

    def get_fg_offset(self, channel: str) -> int:
        return self._fg_offsets.get(channel, 0)

    def foreground(self, channel: str) -> list[str]:
        """把渠道切到前台，返回补发内容，并推进书签。"""
        catchup = self.get_catchup_output(channel)
        self.foreground_channels.add(channel)
        self.mark_fg_output_seen(channel)
        return catchup

    def background(self, channel: str) -> bool:
        """把渠道切回后台。返回该渠道之前是否在前台。"""
        self.mark_fg_output_seen(channel)
        if channel in self.foreground_channels:
            self.foreground_channels.discard(channel)
            return True
        return False

    # ------------------------------------------------------------------
    # 定时器
    # ------------------------------------------------------------------

    def _schedule(self, delay_s: float, callback: Callable[[], None]) -> asyncio.Task:
        async def fire():
            await asyncio.sleep(delay_s)
            try:
                callback()
            except Exception as e:
                logger.error(f"Session [{self.id}] timer callback failed: {e}")

        return asyncio.create_task(fire())

    def _reset_idle_timer(self) -> None:
        if not self.multi_turn or not self.is_active:
            return
        if self._idle_task:
            self._idle_task.cancel()
        self._idle_task = self._schedule(self._idle_timeout_s, self._on_idle_timeout)

    def _on_idle_timeout(self) -> None:
        self._idle_task = None
        if not self.is_active:
            return
        logger.info(f"Session [{self.id}] idle for {self._idle_timeout_s:.0f}s, ending")
        self._notify("on_idle_timeout")

    def _reset_stall_watchdog(self) -> None:
        if not self.is_active:
            return
        if self._stall_task:
            self._stall_task.cancel()
        self._stall_task = self._schedule(self._stall_timeout_s, self._on_stall)

    def _clear_stall_watchdog(self) -> None:
        if self._stall_task:
            self._stall_task.cancel()
            self._stall_task = None

    def _on_stall(self) -> None:
        self._stall_task = None
        if self.status is not SessionStatus.RUNNING:
            return
        logger.info(f"Session [{self.id}] no events for {self._stall_timeout_s:.0f}s, assuming it waits for input")
        self._signal_waiting()

    def _clear_timers(self) -> None:
        if self._idle_task:
            self._idle_task.cancel()
            self._idle_task = None
        self._clear_stall_watchdog()

    @property
    def has_pending_timers(self) -> bool:
        return self._idle_task is not None or self._stall_task is not None

    # ------------------------------------------------------------------
    # 回调
    # ------------------------------------------------------------------

    def _on_stream_activity(self) -> None:
        """回合内又有输出：停顿判断作废，回合结束时需重新发出"待输入"信号。"""
        self._waiting_signalled = False
        self._reset_stall_watchdog()

    def _signal_waiting(self) -> None:
        """发出"待输入"信号，同一回合内只发一次。"""
        if self._waiting_signalled or self.status is not SessionStatus.RUNNING:
            return
        self._waiting_signalled = True
        self._notify("on_waiting_for_input")

    def _notify(self, hook: str, *args: Any) -> None:
        """调用监听器回调。回调异常只记录日志，不影响状态机。"""
        try:
            getattr(self._listener, hook)(self, *args)
        except Exception as e:
            logger.error(f"Session [{self.id}] listener {hook} failed: {e}")

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, name={self.name!r}, status={self.status.value})"
