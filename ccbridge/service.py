"""
桥接服务 - 把配置、消息总线、通知路由、代理唤醒、会话管理器和工具装配在一起。

所有组件都作为显式的上下文对象传递，不存在模块级单例：
    service = BridgeService.from_config(load_config())
    await service.start()
    ...
    service.stop()

后台任务：
- 长时间运行提醒扫描（NotificationRouter 自带的循环）
- 周期性清理（每 cleanup_interval_s 秒调用一次 SessionManager.cleanup）
"""

import asyncio

from loguru import logger

from ccbridge.backend.base import AgentBackend
from ccbridge.backend.claude_cli import ClaudeCliBackend
from ccbridge.bus.queue import MessageBus
from ccbridge.config.schema import Config
from ccbridge.notify.router import NotificationRouter
from ccbridge.notify.sink import BusMessageSink, MessageSink
from ccbridge.notify.wake import BusWakeDispatcher, CliWakeDispatcher, WakeDispatcher
from ccbridge.session.manager import SessionManager
from ccbridge.tools.registry import ToolRegistry
from ccbridge.tools.sessions import create_session_tools
from ccbridge.workspace.resolver import WorkspaceChannelResolver


def create_wake_dispatcher(config: Config, bus: MessageBus) -> WakeDispatcher:
    """按 wake.mode 创建代理唤醒分发器。"""
    if config.wake.mode == "bus":
        return BusWakeDispatcher(bus)
    return CliWakeDispatcher(
        cli_path=config.wake.cli_path,
        timeout_s=config.wake.timeout_s,
        retry_delay_s=config.wake.retry_delay_s,
    )


class BridgeService:
    """ccbridge 的运行时上下文。"""

    def __init__(
        self,
        config: Config,
        bus: MessageBus,
        router: NotificationRouter,
        wake: WakeDispatcher | None,
        resolver: WorkspaceChannelResolver,
        manager: SessionManager,
        tools: ToolRegistry,
    ):
        self.config = config
        self.bus = bus
        self.router = router
        self.wake = wake
        self.resolver = resolver
        self.manager = manager
        self.tools = tools
        self._running = False
        self._cleanup_task: asyncio.Task | None = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        bus: MessageBus | None = None,
        backend: AgentBackend | None = None,
        sink: MessageSink | None = None,
        wake: WakeDispatcher | None = None,
        wake_agent: bool = True,
    ) -> "BridgeService":
        """
        按配置装配所有组件。

        参数:
            config: 根配置
            bus: 消息总线（缺省新建）
            backend: Agent 后端（缺省使用 claude CLI）
            sink: 消息出口（缺省发布到消息总线）
            wake: 代理唤醒分发器（缺省按 wake.mode 创建）
            wake_agent: False 表示会话结束或待输入时不唤醒编排 Agent（终端模式）
        """
        bus = bus or MessageBus()
        notifications = config.notifications
        router = NotificationRouter(
            sink or BusMessageSink(bus),
            debounce_s=notifications.debounce_ms / 1000,
            long_running_threshold_s=notifications.long_running_threshold_s,
            reminder_interval_s=notifications.reminder_interval_s,
            fallback_channel=notifications.fallback_channel,
        )
        if wake_agent:
            wake = wake or create_wake_dispatcher(config, bus)
        else:
            wake = None
        resolver = WorkspaceChannelResolver(config.agent_channels)

        sessions = config.sessions
        manager = SessionManager(
            backend or ClaudeCliBackend(config.claude.cli_path, config.claude.extra_args),
            router,
            wake,
            max_sessions=sessions.max_sessions,
            max_persisted_sessions=sessions.max_persisted_sessions,
            idle_timeout_s=sessions.idle_timeout_minutes * 60,
            stall_timeout_s=sessions.stall_timeout_s,
            output_capacity=sessions.output_buffer_size,
            cleanup_max_age_s=sessions.cleanup_max_age_s,
            waiting_debounce_s=notifications.waiting_debounce_s,
        )
        router.session_provider = manager.list_sessions
        tools = create_session_tools(manager, resolver, sessions)
        return cls(config, bus, router, wake, resolver, manager, tools)

    async def start(self) -> None:
        """启动提醒扫描与周期性清理。"""
        self._running = True
        await self.router.start()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            f"ccbridge started (max_sessions={self.manager.max_sessions}, "
            f"cleanup every {self.config.sessions.cleanup_interval_s}s)"
        )

    def stop(self) -> None:
        """终止所有活跃会话并停止后台任务。"""
        self._running = False
        self.manager.kill_all()
        self.router.stop()
        if self._cleanup_task:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        logger.info("ccbridge stopped")

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.sessions.cleanup_interval_s)
                if self._running:
                    self.manager.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Session cleanup error: {e}")
