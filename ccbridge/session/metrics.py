"""会话统计：累计成本、按日成本、各终态计数、平均时长与最贵会话。"""

import copy
from datetime import datetime, timezone

from ccbridge.session.types import ExpensiveSession, SessionMetrics, SessionStatus
from ccbridge.utils.helpers import format_cost, format_duration, truncate_string


class MetricsRecorder:
    """
    统计记录器。

    每个结束的会话只会被计入一次：记录过的会话 ID 保存在独立集合里，
    与快照是否持久化无关（没有 Claude 会话 ID 的会话不会被持久化，但同样要统计）。
    """

    def __init__(self):
        self._metrics = SessionMetrics()
        self._recorded: set[str] = set()

    def record_launch(self) -> None:
        self._metrics.total_launched += 1

    def is_recorded(self, session_id: str) -> bool:
        return session_id in self._recorded

    def record(self, session) -> bool:
        """
        记录一个已结束的会话。

        参数:
            session: 处于终态的 Session

        返回:
            True 表示本次调用计入了统计；此前已计入时返回 False
        """
        if session.id in self._recorded:
            return False
        self._recorded.add(session.id)

        m = self._metrics
        cost = session.cost_usd or 0.0
        m.total_cost_usd += cost

        # 按完成日期（UTC）汇总，没有完成时间时退回到启动时间
        day = datetime.fromtimestamp(session.completed_at or session.started_at, tz=timezone.utc).strftime("%Y-%m-%d")
        m.cost_per_day[day] = m.cost_per_day.get(day, 0.0) + cost

        if session.status in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.KILLED):
            m.sessions_by_status[session.status.value] += 1

        if session.completed_at:
            m.total_duration_s += session.completed_at - session.started_at
            m.sessions_with_duration += 1

        if m.most_expensive is None or cost > m.most_expensive.cost_usd:
            m.most_expensive = ExpensiveSession(
                id=session.id,
                name=session.name,
                cost_usd=cost,
                prompt=truncate_string(session.prompt, 80),
            )
        return True

    def forget(self, session_id: str) -> None:
        """会话从内存池移除后不再需要去重标记。"""
        self._recorded.discard(session_id)

    def snapshot(self) -> SessionMetrics:
        """返回统计的深拷贝，调用方修改它不会影响内部状态。"""
        return copy.deepcopy(self._metrics)


def format_metrics(metrics: SessionMetrics) -> str:
    """把统计格式化为给用户阅读的多行文本。"""
    by_status = metrics.sessions_by_status
    lines = [
        "📊 Claude Code usage",
        f"Sessions launched: {metrics.total_launched}",
        f"  ✅ completed: {by_status.get('completed', 0)} | "
        f"❌ failed: {by_status.get('failed', 0)} | "
        f"⛔ killed: {by_status.get('killed', 0)}",
        f"Total cost: {format_cost(metrics.total_cost_usd)}",
    ]
    average = metrics.average_duration_s
    lines.append(f"Average duration: {format_duration(average) if average is not None else 'n/a'}")
    if metrics.most_expensive is not None:
        top = metrics.most_expensive
        lines.append(f'Most expensive: {top.name} [{top.id}] {format_cost(top.cost_usd)} "{top.prompt}"')
    if metrics.cost_per_day:
        lines.append("Cost per day:")
        for day in sorted(metrics.cost_per_day, reverse=True)[:7]:
            lines.append(f"  {day}: {format_cost(metrics.cost_per_day[day])}")
    return "\n".join(lines)
