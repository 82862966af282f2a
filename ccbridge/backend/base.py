"""
Agent 后端基类定义模块。

本模块定义了与外部对话 Agent（Claude Code）交互的抽象接口。
会话核心只把 Agent 看作一个不透明的双向事件流：

- AgentEvent   : 事件流中的单个事件（init / text / tool_use / result）
- RunOptions   : 启动一次运行所需的参数（工作目录、模型、预算、续接等）
- AgentRun     : 一次正在进行的运行，提供 events() 事件流、abort()、interrupt()
- AgentBackend : 抽象基类，负责启动运行

架构角色：
  SessionManager.spawn → Session.start → AgentBackend.start() → AgentRun.events() → Session 状态机

类比 Java：
  - AgentBackend 相当于一个 interface（工厂）
  - AgentRun 相当于一个可取消的 Flow.Publisher
  - AgentEvent 相当于不可变的事件 DTO
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Literal

EventKind = Literal["init", "text", "tool_use", "result"]

# result 事件中表示"预算耗尽"的子类型
BUDGET_EXHAUSTED_SUBTYPE = "error_max_budget_usd"


@dataclass
class AgentEvent:
    """
    Agent 事件流中的单个事件。

    payload 约定：
    - init:     {"session_id": str}
    - text:     {"text": str}
    - tool_use: {"name": str, "input": dict}
    - result:   {"subtype": str, "total_cost_usd": float, "result": str | None,
                 "is_error": bool, "errors": list[str]}
    """
    kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        """result 事件是否为成功的回合结束。"""
        return self.kind == "result" and self.payload.get("subtype") == "success" and not self.payload.get("is_error")


@dataclass
class RunOptions:
    """启动一次 Agent 运行的参数。"""
    workdir: str
    model: str | None = None
    max_budget_usd: float | None = None
    permission_mode: str | None = None
    resume_session_id: str | None = None
    fork_session: bool = False
    system_prompt: str | None = None
    allowed_tools: list[str] | None = None


class AgentRun(ABC):
    """
    一次正在进行的 Agent 运行。

    约定：abort() 之后 events() 必须尽快结束（正常结束或抛出异常均可），
    会话在被终止后不会把这个结束当作失败。
    """

    @abstractmethod
    def events(self) -> AsyncIterator[AgentEvent]:
        """按到达顺序产出事件的异步迭代器。"""
        pass

    @abstractmethod
    def abort(self) -> None:
        """立即中止运行（同步、幂等）。"""
        pass

    async def interrupt(self) -> None:
        """打断当前回合（可选能力，默认不支持）。"""
        raise NotImplementedError("interrupt is not supported by this backend")


class AgentBackend(ABC):
    """
    Agent 后端抽象基类。

    prompt 为 str 时是单轮运行；为异步可迭代对象（MessageChannel）时是多轮运行，
    后端按需逐条读取后续消息，通道关闭后结束输入。
    """

    @abstractmethod
    async def start(self, prompt: str | AsyncIterable[str], options: RunOptions) -> AgentRun:
        """启动一次运行并返回运行句柄。"""
        pass
