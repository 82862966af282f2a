"""
已结束会话的快照存储。

一条逻辑记录只存一份（按内部会话 ID），另有两个二级索引：
- name → session_id
- claude_session_id → session_id

三个键中任意一个都能找到记录；淘汰时规范记录与指向它的索引项一起删除，
不会残留指向已淘汰记录的别名。
"""

from loguru import logger

from ccbridge.session.types import PersistedSession


class PersistedSessionStore:
    """按完成时间淘汰的会话快照存储（仅内存）。"""

    def __init__(self, max_records: int = 50):
        self.max_records = max_records
        self._records: dict[str, PersistedSession] = {}
        self._by_name: dict[str, str] = {}
        self._by_claude_id: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._records

    def put(self, record: PersistedSession) -> None:
        """写入或覆盖一条记录，并更新两个索引（同名时指向最新的记录）。"""
        previous = self._records.get(record.session_id)
        if previous is not None:
            self._drop_indexes(previous)
        self._records[record.session_id] = record
        self._by_name[record.name] = record.session_id
        self._by_claude_id[record.claude_session_id] = record.session_id

    def get(self, ref: str) -> PersistedSession | None:
        """按会话 ID、名称或 Claude 会话 ID 查找。"""
        record = self._records.get(ref)
        if record is not None:
            return record
        session_id = self._by_name.get(ref) or self._by_claude_id.get(ref)
        return self._records.get(session_id) if session_id else None

    def records(self) -> list[PersistedSession]:
        """所有记录，按完成时间从新到旧。"""
        return sorted(self._records.values(), key=lambda r: r.completed_at or 0.0, reverse=True)

    def remove(self, session_id: str) -> bool:
        record = self._records.pop(session_id, None)
        if record is None:
            return False
        self._drop_indexes(record)
        return True

    def evict(self, max_records: int | None = None) -> list[PersistedSession]:
        """
        超出上限时淘汰完成时间最早的记录。

        返回:
            被淘汰的记录列表
        """
        cap = self.max_records if max_records is None else max_records
        ordered = self.records()
        evicted = ordered[cap:]
        for record in evicted:
            self.remove(record.session_id)
        if evicted:
            logger.info(f"Evicted {len(evicted)} oldest persisted sessions (cap={cap})")
        return evicted

    def _drop_indexes(self, record: PersistedSession) -> None:
        # 只删除仍指向该记录的索引项，同名的新记录不受影响
        if self._by_name.get(record.name) == record.session_id:
            del self._by_name[record.name]
        if self._by_claude_id.get(record.claude_session_id) == record.session_id:
            del self._by_claude_id[record.claude_session_id]
