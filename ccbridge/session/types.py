"""
会话类型定义 - 定义会话子系统的所有数据模型。

- SessionStatus：会话状态枚举（starting → running → completed/failed/killed）
- SessionConfig：启动会话的请求参数
- PersistedSession：已结束会话的不可变快照（会话对象被回收后仍可续接）
- SessionMetrics：全局统计指标
"""

from dataclasses import dataclass, field
from enum import Enum


class SessionStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.KILLED})
ACTIVE_STATUSES = frozenset({SessionStatus.STARTING, SessionStatus.RUNNING})


@dataclass
class SessionConfig:
    """
    启动会话的请求参数。

    属性:
        prompt: 任务描述（首条用户消息）
        workdir: 工作目录
        name: 可选的会话名，缺省时根据 prompt 自动生成
        model: 模型名（None 表示使用 CLI 默认模型）
        max_budget_usd: 预算上限（美元）
        origin_channel: 发起请求的渠道地址（"channel|chat_id"）
        origin_agent_id: 负责该会话的编排 Agent ID（用于定向唤醒）
        multi_turn: 是否开启多轮对话
        resume_session_id: 要续接的 Claude 会话 ID
        fork_session: 续接时是否分叉为新的 Claude 会话
        system_prompt: 追加的系统提示词
        allowed_tools: 允许使用的工具白名单
        permission_mode: 权限模式
    """
    prompt: str
    workdir: str = "~"
    name: str | None = None
    model: str | None = None
    max_budget_usd: float | None = None
    origin_channel: str | None = None
    origin_agent_id: str | None = None
    multi_turn: bool = True
    resume_session_id: str | None = None
    fork_session: bool = False
    system_prompt: str | None = None
    allowed_tools: list[str] | None = None
    permission_mode: str | None = None


@dataclass(frozen=True)
class PersistedSession:
    """已结束会话的快照。通过会话 ID、名称、Claude 会话 ID 三个键均可找到。"""
    session_id: str
    claude_session_id: str
    name: str
    prompt: str
    workdir: str
    model: str | None
    completed_at: float | None
    status: SessionStatus
    cost_usd: float
    origin_agent_id: str | None = None
    origin_channel: str | None = None


@dataclass
class ExpensiveSession:
    id: str
    name: str
    cost_usd: float
    prompt: str


@dataclass
class SessionMetrics:
    """
    全局会话统计。每个结束的会话只计入一次。

    属性:
        total_cost_usd: 累计成本
        cost_per_day: 按完成日期（YYYY-MM-DD）汇总的成本
        sessions_by_status: 各终态的会话数
        total_launched: 累计启动的会话数
        total_duration_s: 有完成时间的会话的时长总和（秒）
        sessions_with_duration: 有完成时间的会话数
        most_expensive: 成本最高的会话（并列时保留最先出现的）
    """
    total_cost_usd: float = 0.0
    cost_per_day: dict[str, float] = field(default_factory=dict)
    sessions_by_status: dict[str, int] = field(
        default_factory=lambda: {"completed": 0, "failed": 0, "killed": 0}
    )
    total_launched: int = 0
    total_duration_s: float = 0.0
    sessions_with_duration: int = 0
    most_expensive: ExpensiveSession | None = None

    @property
    def average_duration_s(self) -> float | None:
        if not self.sessions_with_duration:
            return None
        return self.total_duration_s / self.sessions_with_duration
