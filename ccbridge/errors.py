"""
错误类型定义模块 - ccbridge 的统一异常体系。

所有业务异常都继承自 BridgeError，调用方可以只捕获基类。
后台任务（定时器、事件流消费、唤醒投递）中的异常不会向外抛出，
而是在边界处被捕获并转换为会话状态变化或一条警告日志；
只有显式调用的同步操作（如 spawn、send_message）才会把这些异常抛给调用者。

【Java 开发者类比】
- BridgeError 相当于一个自定义的 RuntimeException 基类
- 各子类相当于按业务语义细分的异常（类似 Spring 的 DataAccessException 家族）
"""


class BridgeError(Exception):
    """ccbridge 所有业务异常的基类。"""


class CapacityExceededError(BridgeError):
    """会话池已满，拒绝启动新会话（不会创建任何会话）。"""

    def __init__(self, max_sessions: int):
        self.max_sessions = max_sessions
        super().__init__(f"Max sessions reached ({max_sessions}). Kill a session first.")


class StreamFailureError(BridgeError):
    """Agent 事件流在初始化前或消费过程中出错。"""


class BudgetExhaustedError(BridgeError):
    """会话因预算耗尽而终止（失败状态的一个特殊子类型）。消息文本即会话的 error 字段。"""

    def __init__(self, cost_usd: float, max_budget_usd: float | None = None):
        self.cost_usd = cost_usd
        self.max_budget_usd = max_budget_usd
        budget = f" / ${max_budget_usd:.4f}" if max_budget_usd else ""
        super().__init__(f"Budget exhausted (${cost_usd:.4f}{budget})")


class DeliveryError(BridgeError):
    """消息投递或代理唤醒失败。只记录日志，从不向上升级。"""


class SessionNotFoundError(BridgeError):
    """按 ID 或名称找不到会话。"""

    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f'Session "{ref}" not found.')


class InvalidTransitionError(BridgeError):
    """当前状态不允许该操作（例如向非运行中的会话发送消息）。"""
