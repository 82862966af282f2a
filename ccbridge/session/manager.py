"""
会话管理器 - 会话池、持久化、统计与对外通知。

【职责】
1. 会话池：并发上限、命名去重、按 ID/名称查找
2. 持久化：会话结束后保存快照（需要 Claude 会话 ID），会话对象被回收后仍可续接
3. 统计：每个结束的会话恰好计入一次
4. 对外通知：
   - 完成：通知发起渠道，并唤醒编排 Agent 总结结果
   - 失败 / 被终止：只通知发起渠道
   - 待输入：每次都通知发起渠道；唤醒按会话 5 秒去重
5. 清理：结束超过 1 小时的会话移出内存池，快照超出上限时按完成时间淘汰

【Java 开发者类比】
SessionManager 相当于一个带连接池语义的 Service：
  spawn ≈ pool.borrow()，cleanup ≈ 定时的 evictor 线程，
  _ManagerListener ≈ 注册到每个会话上的事件监听器。

【二开提示】
成功唤醒 Agent、失败只通知用户的策略集中在 _trigger_agent_event 一处，
如需让失败也唤醒 Agent，只改这里即可。
"""

import re
import time

from loguru import logger

from ccbridge.backend.base import AgentBackend
from ccbridge.errors import CapacityExceededError
from ccbridge.notify.router import NotificationRouter
from ccbridge.notify.wake import WakeDispatcher
from ccbridge.session.metrics import MetricsRecorder
from ccbridge.session.session import (
    DEFAULT_IDLE_TIMEOUT_S,
    DEFAULT_OUTPUT_CAPACITY,
    DEFAULT_STALL_TIMEOUT_S,
    Session,
    SessionListener,
)
from ccbridge.session.store import PersistedSessionStore
from ccbridge.session.types import PersistedSession, SessionConfig, SessionMetrics, SessionStatus
from ccbridge.utils.helpers import (
    generate_session_name,
    looks_like_claude_session_id,
    tail_preview,
    truncate_string,
)

CLEANUP_MAX_AGE_S = 60 * 60
WAITING_WAKE_DEBOUNCE_S = 5.0


class _ManagerListener(SessionListener):
    """把会话回调转发给通知路由和管理器自身的收尾逻辑。"""

    def __init__(self, manager: "SessionManager"):
        self.manager = manager

    def on_output(self, session: Session, text: str) -> None:
        self.manager.router.on_assistant_text(session, text)
        # 前台渠道已经实时看到这段输出，之后再切到前台时不应作为补发内容
        for channel in session.foreground_channels:
            session.mark_fg_output_seen(channel)

    def on_tool_use(self, session: Session, name: str, tool_input: dict) -> None:
        self.manager.router.on_tool_use(session, name, tool_input)

    def on_budget_exhausted(self, session: Session) -> None:
        self.manager.router.on_budget_exhausted(session)

    def on_waiting_for_input(self, session: Session) -> None:
        self.manager.router.on_waiting_for_input(session)
        self.manager._trigger_waiting_event(session)

    def on_complete(self, session: Session) -> None:
        self.manager._persist(session)
        # 预算耗尽已经单独通知过
        if not session.budget_exhausted:
            self.manager.router.on_session_complete(session)
        self.manager._trigger_agent_event(session)

    def on_idle_timeout(self, session: Session) -> None:
        self.manager.kill(session.id, reason="idle timeout")


class SessionManager:
    """
    会话管理器。

    参数:
        backend: Agent 后端
        router: 通知路由
        wake: 代理唤醒分发器（None 表示不唤醒）
        max_sessions: 活跃会话上限
        max_persisted_sessions: 快照保留上限
        cleanup_max_age_s: 已结束会话在内存池中的保留时长
        waiting_debounce_s: 同一会话待输入唤醒的去重窗口
    """

    def __init__(
        self,
        backend: AgentBackend,
        router: NotificationRouter,
        wake: WakeDispatcher | None = None,
        *,
        max_sessions: int = 5,
        max_persisted_sessions: int = 50,
        idle_timeout_s: float = DEFAULT_IDLE_TIMEOUT_S,
        stall_timeout_s: float = DEFAULT_STALL_TIMEOUT_S,
        output_capacity: int = DEFAULT_OUTPUT_CAPACITY,
        cleanup_max_age_s: float = CLEANUP_MAX_AGE_S,
        waiting_debounce_s: float = WAITING_WAKE_DEBOUNCE_S,
    ):
        self.backend = backend
        self.router = router
        self.wake = wake
        self.max_sessions = max_sessions
        self.idle_timeout_s = idle_timeout_s
        self.stall_timeout_s = stall_timeout_s
        self.output_capacity = output_capacity
        self.cleanup_max_age_s = cleanup_max_age_s
        self.waiting_debounce_s = waiting_debounce_s

        self._sessions: dict[str, Session] = {}
        self._store = PersistedSessionStore(max_persisted_sessions)
        self._metrics = MetricsRecorder()
        # 会话 ID → 上次待输入唤醒的单调时钟时间
        self._last_waiting_wake: dict[str, float] = {}

    # ------------------------------------------------------------------
    # 会话池
    # ------------------------------------------------------------------

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.is_active)

    def spawn(self, config: SessionConfig) -> Session:
        """
        创建并启动一个会话（不等待第一个事件）。

        异常:
            CapacityExceededError: 活跃会话数已达上限，不会创建任何会话
        """
        if self.active_count >= self.max_sessions:
            raise CapacityExceededError(self.max_sessions)

        name = self._unique_name(config.name or generate_session_name(config.prompt))
        session = Session(
            config,
            name,
            self.backend,
            _ManagerListener(self),
            idle_timeout_s=self.idle_timeout_s,
            stall_timeout_s=self.stall_timeout_s,
            output_capacity=self.output_capacity,
        )
        self._sessions[session.id] = session
        self._metrics.record_launch()
        session.start()
        logger.info(f"Spawned session {name} [{session.id}] (origin={session.origin_channel}, agent={session.origin_agent_id})")

        self.deliver_to_channel(session, f"↩️ [{name}] Launched:\n{truncate_string(session.prompt, 80)}", "launched")
        return session

    def _unique_name(self, base: str) -> str:
        existing = {s.name for s in self._sessions.values()}
        if base not in existing:
            return base
        i = 2
        while f"{base}-{i}" in existing:
            i += 1
        return f"{base}-{i}"

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list_sessions(self, status: SessionStatus | str | None = None) -> list[Session]:
        """列出内存池中的会话，按启动时间从新到旧。status 为 None 或 "all" 时不过滤。"""
        sessions = list(self._sessions.values())
        if status and status != "all":
            wanted = SessionStatus(status)
            sessions = [s for s in sessions if s.status is wanted]
        return sorted(sessions, key=lambda s: s.started_at, reverse=True)

    def resolve(self, ref: str) -> Session | None:
        """先按 ID 精确匹配，再按名称匹配。"""
        session = self._sessions.get(ref)
        if session is not None:
            return session
        for session in self._sessions.values():
            if session.name == ref:
                return session
        return None

    def resolve_claude_session_id(self, ref: str) -> str | None:
        """
        把引用解析为可续接的 Claude 会话 ID。

        依次查找：内存池中的会话 → 快照（ID/名称/Claude 会话 ID 均可）→ 引用本身是 UUID 时原样返回。
        """
        session = self.resolve(ref)
        if session is not None and session.claude_session_id:
            return session.claude_session_id
        record = self._store.get(ref)
        if record is not None:
            return record.claude_session_id
        if looks_like_claude_session_id(ref):
            return ref
        return None

    def get_persisted_session(self, ref: str) -> PersistedSession | None:
        return self._store.get(ref)

    def list_persisted_sessions(self) -> list[PersistedSession]:
        """所有快照，按完成时间从新到旧。"""
        return self._store.records()

    # ------------------------------------------------------------------
    # 终止与清理
    # ------------------------------------------------------------------

    def kill(self, ref: str, reason: str | None = None) -> bool:
        """
        终止会话并完成收尾（统计、持久化、完成通知、对外事件）。

        被终止的会话不会触发 on_complete，所以这里补做完成路径上的工作。

        返回:
            会话不存在或已处于终态时返回 False
        """
        session = self.resolve(ref)
        if session is None or not session.kill(reason=reason):
            return False
        self._persist(session)
        self.router.on_session_complete(session)
        self._trigger_agent_event(session)
        return True

    def kill_all(self) -> int:
        """
        终止所有活跃会话（关闭时使用）。

        只做统计和持久化，不发通知、不唤醒 Agent，并取消尚未完成的唤醒重试。

        返回:
            被终止的会话数
        """
        count = 0
        for session in list(self._sessions.values()):
            if not session.is_active:
                continue
            try:
                session.kill(reason="shutdown")
            except Exception as e:
                logger.error(f"Failed to kill session={session.id} on shutdown: {e}")
            if session.is_terminal:
                self._persist(session)
                count += 1
        if self.wake is not None:
            self.wake.cancel_pending()
        if count:
            logger.info(f"Killed {count} active sessions")
        return count

    def cleanup(self, now: float | None = None) -> int:
        """
        两阶段清理。

        1. 结束超过 cleanup_max_age_s 的会话：补做持久化后移出内存池，丢弃其去重与路由状态
        2. 快照超出上限时按完成时间淘汰最旧的

        返回:
            本次移出内存池的会话数
        """
        now = time.time() if now is None else now
        removed = 0
        for session_id, session in list(self._sessions.items()):
            if not session.is_terminal or not session.completed_at:
                continue
            if now - session.completed_at <= self.cleanup_max_age_s:
                continue
            self._persist(session)
            del self._sessions[session_id]
            self._last_waiting_wake.pop(session_id, None)
            self.router.forget_session(session_id)
            self._metrics.forget(session_id)
            removed += 1

        if removed:
            logger.info(f"Cleaned up {removed} finished sessions")
        self._store.evict()
        return removed

    # ------------------------------------------------------------------
    # 持久化与统计
    # ------------------------------------------------------------------

    def _persist(self, session: Session) -> None:
        """记录统计（每个会话一次）；有 Claude 会话 ID 时保存快照。"""
        self._metrics.record(session)
        if not session.claude_session_id:
            return
        self._store.put(PersistedSession(
            session_id=session.id,
            claude_session_id=session.claude_session_id,
            name=session.name,
            prompt=session.prompt,
            workdir=session.workdir,
            model=session.model,
            completed_at=session.completed_at,
            status=session.status,
            cost_usd=session.cost_usd,
            origin_agent_id=session.origin_agent_id,
            origin_channel=session.origin_channel,
        ))
        logger.debug(f"Persisted session {session.name} [{session.id}] -> {session.claude_session_id}")

    def get_metrics(self) -> SessionMetrics:
        return self._metrics.snapshot()

    # ------------------------------------------------------------------
    # 对外通知
    # ------------------------------------------------------------------

    def deliver_to_channel(self, session: Session, text: str, label: str) -> None:
        """向会话的发起渠道发送一条通知（不唤醒 Agent）。"""
        channel = session.origin_channel or "unknown"
        logger.debug(f"Delivering {label} for session={session.id} via channel={channel}")
        self.router.emit_to_channel(channel, text)

    def _trigger_agent_event(self, session: Session) -> None:
        """会话结束后的对外事件：完成时通知并唤醒 Agent，失败/终止只通知。"""
        preview = tail_preview(session.get_output(5))

        if session.status is SessionStatus.COMPLETED:
            event_text = "\n".join([
                "Claude Code session completed.",
                f"Name: {session.name} | ID: {session.id}",
                f"Status: {session.status.value}",
                "",
                "Output preview:",
                preview,
                "",
                f"Use claude_output(session='{session.id}', full=true) to get the full result "
                "and transmit the analysis to the user.",
            ])
            lines = [
                f"✅ [{session.name}] Completed",
                f"   📁 {session.workdir}",
                f"   💰 ${session.cost_usd:.4f}",
            ]
            clean_preview = re.sub(r"[*`_~]", "", preview)
            if clean_preview.strip():
                lines += ["", clean_preview]
            self.deliver_to_channel(session, "\n".join(lines), "completed")
            self._wake(session, event_text, "completed")
        else:
            killed = session.status is SessionStatus.KILLED
            lines = [
                f"{'⛔' if killed else '❌'} [{session.name}] {'Killed' if killed else 'Failed'}",
                f"   📁 {session.workdir}",
                f'   📝 "{truncate_string(session.prompt, 60)}"',
            ]
            if session.error:
                lines.append(f"   ⚠️ {session.error}")
            self.deliver_to_channel(session, "\n".join(lines), session.status.value)

        self._last_waiting_wake.pop(session.id, None)

    def _trigger_waiting_event(self, session: Session) -> None:
        """待输入：每次都通知发起渠道，唤醒按会话去重。"""
        preview = tail_preview(session.get_output(5))
        message = f"🔔 [{session.name}] Claude asks:\n{preview[-200:]}"

        now = time.monotonic()
        last = self._last_waiting_wake.get(session.id)
        if last is not None and now - last < self.waiting_debounce_s:
            logger.debug(f"Debounced wake for session={session.id} ({now - last:.1f}s since last), message only")
            self.deliver_to_channel(session, message, "waiting")
            return
        self._last_waiting_wake[session.id] = now

        kind = "Multi-turn session" if session.multi_turn else "Session"
        event_text = "\n".join([
            f"{kind} is waiting for input.",
            f"Name: {session.name} | ID: {session.id}",
            "",
            "Last output:",
            preview,
            "",
            f"Use claude_respond(session='{session.id}', message='...') to send a reply, "
            f"or claude_output(session='{session.id}') to see full context.",
        ])
        self.deliver_to_channel(session, message, "waiting")
        self._wake(session, event_text, "waiting")

    def _wake(self, session: Session, text: str, label: str) -> None:
        if self.wake is None:
            return
        agent_id = (session.origin_agent_id or "").strip()
        try:
            if agent_id:
                self.wake.deliver(agent_id, text, session.origin_channel)
            else:
                logger.warning(f"No origin agent for {label} session={session.id}, broadcasting system event")
                self.wake.deliver_broadcast(text)
        except Exception as e:
            logger.error(f"Failed to dispatch {label} wake for session={session.id}: {e}")
