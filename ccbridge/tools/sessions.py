"""
会话控制工具模块 (tools/sessions.py)

编排 Agent 通过这些工具启动和操控 Claude Code 会话：
    claude_launch   启动（或续接）一个会话
    claude_respond  向运行中的多轮会话发送后续消息
    claude_fg       把会话切到当前渠道的前台（补发未看过的输出）
    claude_bg       把会话切回后台
    claude_kill     终止会话
    claude_output   查看会话输出
    claude_sessions 列出会话
    claude_stats    使用统计

【渠道解析顺序】
    显式 channel 参数 → 工具上下文（set_context）→ 按会话工作目录查映射表 → "unknown"

【二开提示】
    自动回复上限（max_auto_responds）防止编排 Agent 与 Claude 无限对话：
    连续自动回复达到上限后必须由用户确认（user_initiated=true）才能继续。
"""

from typing import Any

from ccbridge.config.schema import SessionsConfig
from ccbridge.errors import BridgeError, SessionNotFoundError
from ccbridge.session.manager import SessionManager
from ccbridge.session.metrics import format_metrics
from ccbridge.session.session import Session
from ccbridge.session.types import SessionConfig, SessionStatus
from ccbridge.tools.base import Tool
from ccbridge.tools.registry import ToolRegistry
from ccbridge.utils.helpers import format_cost, format_duration, truncate_string
from ccbridge.workspace.resolver import WorkspaceChannelResolver

_CHANNEL_PARAM = {
    "type": "string",
    "description": 'Origin channel in "channel|target" format (e.g. "telegram|123456789")',
}

_STATUS_ICONS = {
    SessionStatus.STARTING: "🟡",
    SessionStatus.RUNNING: "🟢",
    SessionStatus.COMPLETED: "✅",
    SessionStatus.FAILED: "❌",
    SessionStatus.KILLED: "⛔",
}

# 切到前台时补发内容的字符上限
_CATCHUP_MAX_CHARS = 4000


class SessionTool(Tool):
    """
    会话工具的公共基类。

    持有会话管理器、工作区解析器和当前对话上下文；
    子类实现 _run()，业务异常（BridgeError）统一转换为 "Error: ..." 文本。
    """

    def __init__(
        self,
        manager: SessionManager,
        resolver: WorkspaceChannelResolver | None = None,
        defaults: SessionsConfig | None = None,
    ):
        self._manager = manager
        self._resolver = resolver
        self._defaults = defaults or SessionsConfig()
        self._channel: str | None = None
        self._chat_id: str | None = None
        self._account_id: str | None = None
        self._agent_id: str | None = None

    def set_context(
        self,
        channel: str,
        chat_id: str,
        agent_id: str | None = None,
        account_id: str | None = None,
    ) -> None:
        """设置当前对话的渠道、聊天 ID 与编排 Agent。"""
        self._channel = channel
        self._chat_id = chat_id
        self._agent_id = agent_id
        self._account_id = account_id

    @property
    def context_channel(self) -> str | None:
        """上下文对应的渠道地址（"channel|chat" 或 "channel|account|chat"）。"""
        if not self._channel or not self._chat_id:
            return None
        if self._account_id:
            return f"{self._channel}|{self._account_id}|{self._chat_id}"
        return f"{self._channel}|{self._chat_id}"

    def resolve_channel(self, explicit: str | None = None, workdir: str | None = None) -> str:
        if explicit:
            return explicit
        if self.context_channel:
            return self.context_channel
        if self._resolver is not None and workdir:
            mapped = self._resolver.resolve(workdir)
            if mapped:
                return mapped
        return "unknown"

    def require_session(self, ref: str) -> Session:
        session = self._manager.resolve(ref)
        if session is None:
            raise SessionNotFoundError(ref)
        return session

    async def execute(self, **kwargs: Any) -> str:
        try:
            return await self._run(**kwargs)
        except BridgeError as e:
            return f"Error: {e}"

    async def _run(self, **kwargs: Any) -> str:
        raise NotImplementedError


class LaunchTool(SessionTool):
    """启动（或续接）一个 Claude Code 会话。"""

    @property
    def name(self) -> str:
        return "claude_launch"

    @property
    def description(self) -> str:
        return (
            "Launch a Claude Code session in the background to work on a coding task. "
            "Sessions are multi-turn by default: follow up with claude_respond. "
            "You will be notified when the session needs input or finishes."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "description": "The task for Claude Code", "minLength": 1},
                "name": {"type": "string", "description": "Short session name (generated from the prompt if omitted)"},
                "workdir": {"type": "string", "description": "Working directory"},
                "model": {"type": "string", "description": "Model to use"},
                "max_budget_usd": {"type": "number", "description": "Budget cap in USD", "minimum": 0},
                "multi_turn": {"type": "boolean", "description": "Keep the session open for follow-ups"},
                "resume_session_id": {
                    "type": "string",
                    "description": "Session name, ID or Claude session ID to resume",
                },
                "fork_session": {"type": "boolean", "description": "Fork instead of continuing the resumed session"},
                "channel": _CHANNEL_PARAM,
            },
            "required": ["prompt"],
        }

    async def _run(
        self,
        prompt: str,
        name: str | None = None,
        workdir: str | None = None,
        model: str | None = None,
        max_budget_usd: float | None = None,
        multi_turn: bool | None = None,
        resume_session_id: str | None = None,
        fork_session: bool = False,
        channel: str | None = None,
        **kwargs: Any,
    ) -> str:
        defaults = self._defaults
        claude_session_id = None
        if resume_session_id:
            claude_session_id = self._manager.resolve_claude_session_id(resume_session_id)
            if claude_session_id is None:
                return f'Error: Could not resolve "{resume_session_id}" to a Claude session ID.'
            record = self._manager.get_persisted_session(resume_session_id)
            if record is not None:
                workdir = workdir or record.workdir
                name = name or record.name

        workdir = workdir or defaults.default_workdir
        config = SessionConfig(
            prompt=prompt,
            workdir=workdir,
            name=name,
            model=model or defaults.default_model,
            max_budget_usd=max_budget_usd if max_budget_usd is not None else defaults.default_budget_usd,
            origin_channel=self.resolve_channel(channel, workdir),
            origin_agent_id=self._agent_id,
            multi_turn=defaults.multi_turn if multi_turn is None else multi_turn,
            resume_session_id=claude_session_id,
            fork_session=fork_session,
            permission_mode=defaults.permission_mode,
        )
        session = self._manager.spawn(config)

        lines = [
            f"Session {session.name} [{session.id}] launched.",
            f"  Workdir: {session.workdir}",
            f"  Budget: {format_cost(session.max_budget_usd)}",
            f"  Mode: {'multi-turn' if session.multi_turn else 'single-turn'}",
        ]
        if claude_session_id:
            lines.append(f"  Resuming: {claude_session_id}" + (" (fork)" if fork_session else ""))
        lines += ["", "You will be notified when it needs input or finishes."]
        return "\n".join(lines)


class RespondTool(SessionTool):
    """向运行中的会话发送后续消息。"""

    @property
    def name(self) -> str:
        return "claude_respond"

    @property
    def description(self) -> str:
        return (
            "Send a follow-up message to a running Claude Code session. "
            "Set user_initiated=true when the message comes from the user rather than from you."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "session": {"type": "string", "description": "Session name or ID"},
                "message": {"type": "string", "description": "The message to send", "minLength": 1},
                "interrupt": {"type": "boolean", "description": "Interrupt the current turn first"},
                "user_initiated": {"type": "boolean", "description": "The message was written by the user"},
                "channel": _CHANNEL_PARAM,
            },
            "required": ["session", "message"],
        }

    async def _run(
        self,
        session: str,
        message: str,
        interrupt: bool = False,
        user_initiated: bool = False,
        channel: str | None = None,
        **kwargs: Any,
    ) -> str:
        target = self.require_session(session)
        if target.status is not SessionStatus.RUNNING:
            return (
                f"Error: Session {target.name} [{target.id}] is not running "
                f"(status: {target.status.value}). Cannot send a message to a non-running session."
            )

        limit = self._defaults.max_auto_responds
        if user_initiated:
            target.auto_respond_count = 0
        elif target.auto_respond_count >= limit:
            return (
                f"Error: Auto-respond limit reached ({limit}) for session {target.name}. "
                "Ask the user how to proceed, then call claude_respond with user_initiated=true."
            )

        if interrupt:
            try:
                await target.interrupt()
            except NotImplementedError as e:
                return f"Error: {e}"
        target.send_message(message)
        if not user_initiated:
            target.auto_respond_count += 1

        notify = self.resolve_channel(channel, target.workdir)
        if notify == "unknown":
            notify = target.origin_channel or "unknown"
        self._manager.router.emit_to_channel(notify, f"↩️ [{target.name}] Responded:\n{message}")

        lines = [f"Message sent to session {target.name} [{target.id}]."]
        if interrupt:
            lines.append("  (interrupted current turn first)")
        lines += [f'  Message: "{truncate_string(message, 80)}"', "", "Use claude_output to see the response."]
        return "\n".join(lines)


class ForegroundTool(SessionTool):
    """把会话切到当前渠道的前台。"""

    @property
    def name(self) -> str:
        return "claude_fg"

    @property
    def description(self) -> str:
        return (
            "Bring a Claude Code session to the foreground: its live output streams to this channel. "
            "Output produced since you last watched is returned as catch-up."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "session": {"type": "string", "description": "Session name or ID"},
                "channel": _CHANNEL_PARAM,
            },
            "required": ["session"],
        }

    async def _run(self, session: str, channel: str | None = None, **kwargs: Any) -> str:
        target = self.require_session(session)
        channel_id = self.resolve_channel(channel, target.workdir)
        if channel_id == "unknown":
            return "Error: Cannot determine which channel to stream to. Pass channel explicitly."

        catchup = target.foreground(channel_id)
        lines = [
            f"Session {target.name} [{target.id}] is now in foreground "
            f"({target.status.value}, {format_duration(target.duration_s)}).",
        ]
        if catchup:
            text = "\n".join(catchup)
            if len(text) > _CATCHUP_MAX_CHARS:
                text = "..." + text[-_CATCHUP_MAX_CHARS:]
            lines += ["", f"Catch-up ({len(catchup)} new entries):", text]
        else:
            lines.append("No new output since you last watched.")
        return "\n".join(lines)


class BackgroundTool(SessionTool):
    """把会话切回后台。"""

    @property
    def name(self) -> str:
        return "claude_bg"

    @property
    def description(self) -> str:
        return (
            "Send a Claude Code session back to background (stop streaming). "
            "If no session is given, detaches every session in foreground on this channel."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "session": {"type": "string", "description": "Session name or ID"},
                "channel": _CHANNEL_PARAM,
            },
        }

    async def _run(self, session: str | None = None, channel: str | None = None, **kwargs: Any) -> str:
        if session:
            target = self.require_session(session)
            target.background(self.resolve_channel(channel, target.workdir))
            return f"Session {target.name} [{target.id}] moved to background."

        channel_id = self.resolve_channel(channel)
        sessions = self._manager.list_sessions()
        if channel_id == "unknown" and self._resolver is not None:
            for s in sessions:
                mapped = self._resolver.resolve(s.workdir)
                if mapped and mapped in s.foreground_channels:
                    channel_id = mapped
                    break

        detached = [s for s in sessions if channel_id in s.foreground_channels]
        if not detached:
            return "No session is currently in foreground."
        for s in detached:
            s.background(channel_id)
        return "Moved to background: " + ", ".join(f"{s.name} [{s.id}]" for s in detached)


class KillTool(SessionTool):
    """终止会话。"""

    @property
    def name(self) -> str:
        return "claude_kill"

    @property
    def description(self) -> str:
        return "Terminate a Claude Code session."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {"session": {"type": "string", "description": "Session name or ID"}},
            "required": ["session"],
        }

    async def _run(self, session: str, **kwargs: Any) -> str:
        target = self.require_session(session)
        if not self._manager.kill(target.id, reason="killed on request"):
            return f"Session {target.name} [{target.id}] is already {target.status.value}."
        return f"Session {target.name} [{target.id}] killed."


class OutputTool(SessionTool):
    """查看会话输出。"""

    @property
    def name(self) -> str:
        return "claude_output"

    @property
    def description(self) -> str:
        return "Show the output of a Claude Code session (the last lines, or everything with full=true)."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "session": {"type": "string", "description": "Session name or ID"},
                "lines": {"type": "integer", "description": "Number of recent entries", "minimum": 1},
                "full": {"type": "boolean", "description": "Return the whole buffered output"},
            },
            "required": ["session"],
        }

    async def _run(self, session: str, lines: int = 20, full: bool = False, **kwargs: Any) -> str:
        target = self._manager.resolve(session)
        if target is None:
            record = self._manager.get_persisted_session(session)
            if record is None:
                raise SessionNotFoundError(session)
            return (
                f"Session {record.name} [{record.session_id}] ({record.status.value}) has been cleaned up "
                f"and its output is no longer buffered. Resume it with "
                f"claude_launch(resume_session_id='{record.claude_session_id}')."
            )

        output = target.get_output() if full else target.get_output(lines)
        header = (
            f"Session {target.name} [{target.id}] "
            f"({target.status.value}, {format_cost(target.cost_usd)}, {format_duration(target.duration_s)})"
        )
        if target.error:
            header += f"\nError: {target.error}"
        body = "\n".join(output) if output else "(no output yet)"
        return f"{header}\n\n{body}"


class ListSessionsTool(SessionTool):
    """列出会话。"""

    @property
    def name(self) -> str:
        return "claude_sessions"

    @property
    def description(self) -> str:
        return "List Claude Code sessions, optionally filtered by status."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "status": {
                    "type": "string",
                    "enum": ["all", *[s.value for s in SessionStatus]],
                    "description": "Filter by status",
                },
            },
        }

    async def _run(self, status: str = "all", **kwargs: Any) -> str:
        sessions = self._manager.list_sessions(status)
        lines = []
        for s in sessions:
            fg = " 👁" if s.foreground_channels else ""
            lines.append(
                f"{_STATUS_ICONS[s.status]} {s.name} [{s.id}] {s.status.value}{fg} | "
                f"{format_duration(s.duration_s)} | {format_cost(s.cost_usd)} | "
                f"{truncate_string(s.prompt, 60)}"
            )

        if status == "all":
            live = {s.id for s in sessions}
            resumable = [r for r in self._manager.list_persisted_sessions() if r.session_id not in live]
            if resumable:
                lines += ["", "Resumable (cleaned up):"]
                lines += [
                    f"  {r.name} [{r.session_id}] {r.status.value} | {format_cost(r.cost_usd)} | {r.claude_session_id}"
                    for r in resumable
                ]

        return "\n".join(lines) if lines else "No sessions."


class StatsTool(SessionTool):
    """使用统计。"""

    @property
    def name(self) -> str:
        return "claude_stats"

    @property
    def description(self) -> str:
        return "Show Claude Code usage metrics: session counts by status, cost, average duration."

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {}}

    async def _run(self, **kwargs: Any) -> str:
        return format_metrics(self._manager.get_metrics())


SESSION_TOOLS = (
    LaunchTool,
    RespondTool,
    ForegroundTool,
    BackgroundTool,
    KillTool,
    OutputTool,
    ListSessionsTool,
    StatsTool,
)


def create_session_tools(
    manager: SessionManager,
    resolver: WorkspaceChannelResolver | None = None,
    defaults: SessionsConfig | None = None,
) -> ToolRegistry:
    """创建注册了全部会话工具的注册表。"""
    registry = ToolRegistry()
    for tool_cls in SESSION_TOOLS:
        registry.register(tool_cls(manager, resolver, defaults))
    return registry
