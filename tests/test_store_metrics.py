from datetime import datetime, timezone
from types import SimpleNamespace

from ccbridge.session.metrics import MetricsRecorder, format_metrics
from ccbridge.session.store import PersistedSessionStore
from ccbridge.session.types import PersistedSession, SessionStatus

from conftest import CLAUDE_ID_1, CLAUDE_ID_2, CLAUDE_ID_3


def _record(session_id: str, name: str, claude_id: str, completed_at: float) -> PersistedSession:
    return PersistedSession(
        session_id=session_id,
        claude_session_id=claude_id,
        name=name,
        prompt=f"task {name}",
        workdir="/repo",
        model=None,
        completed_at=completed_at,
        status=SessionStatus.COMPLETED,
        cost_usd=0.1,
    )


def _finished(session_id: str, status: SessionStatus, cost: float, started_at: float = 1000.0,
              completed_at: float | None = 1060.0, prompt: str = "do work") -> SimpleNamespace:
    return SimpleNamespace(
        id=session_id,
        name=f"s-{session_id}",
        prompt=prompt,
        status=status,
        cost_usd=cost,
        started_at=started_at,
        completed_at=completed_at,
    )


# ----------------------------------------------------------------------
# PersistedSessionStore
# ----------------------------------------------------------------------


def test_record_is_reachable_by_all_three_keys() -> None:
    store = PersistedSessionStore()
    record = _record("aaaa1111", "build", CLAUDE_ID_1, 100.0)
    store.put(record)

    assert store.get("aaaa1111") is record
    assert store.get("build") is record
    assert store.get(CLAUDE_ID_1) is record
    assert store.get("missing") is None
    assert len(store) == 1
    assert "aaaa1111" in store


def test_evict_drops_oldest_record_and_all_its_aliases() -> None:
    store = PersistedSessionStore(max_records=2)
    store.put(_record("aaaa1111", "first", CLAUDE_ID_1, 100.0))
    store.put(_record("bbbb2222", "second", CLAUDE_ID_2, 200.0))
    store.put(_record("cccc3333", "third", CLAUDE_ID_3, 300.0))

    evicted = store.evict()

    assert [r.session_id for r in evicted] == ["aaaa1111"]
    assert len(store) == 2
    for alias in ("aaaa1111", "first", CLAUDE_ID_1):
        assert store.get(alias) is None
    assert [r.name for r in store.records()] == ["third", "second"]


def test_name_index_points_at_newest_record_with_that_name() -> None:
    store = PersistedSessionStore()
    old = _record("aaaa1111", "build", CLAUDE_ID_1, 100.0)
    new = _record("bbbb2222", "build", CLAUDE_ID_2, 200.0)
    store.put(old)
    store.put(new)

    assert store.get("build") is new

    # 删除旧记录不能把新记录的名称索引一起删掉
    store.remove("aaaa1111")
    assert store.get("build") is new
    assert store.get(CLAUDE_ID_1) is None


def test_put_same_session_replaces_previous_snapshot() -> None:
    store = PersistedSessionStore()
    store.put(_record("aaaa1111", "build", CLAUDE_ID_1, 100.0))
    store.put(_record("aaaa1111", "build-renamed", CLAUDE_ID_1, 150.0))

    assert len(store) == 1
    assert store.get("build") is None
    assert store.get("build-renamed").completed_at == 150.0


# ----------------------------------------------------------------------
# MetricsRecorder
# ----------------------------------------------------------------------


def test_session_is_counted_once() -> None:
    recorder = MetricsRecorder()
    session = _finished("aaaa1111", SessionStatus.KILLED, 0.5)

    assert recorder.record(session) is True
    assert recorder.record(session) is False

    metrics = recorder.snapshot()
    assert metrics.sessions_by_status == {"completed": 0, "failed": 0, "killed": 1}
    assert metrics.total_cost_usd == 0.5
    assert recorder.is_recorded("aaaa1111")


def test_aggregates_cost_duration_and_per_day() -> None:
    recorder = MetricsRecorder()
    recorder.record_launch()
    recorder.record_launch()
    recorder.record(_finished("a", SessionStatus.COMPLETED, 1.0, started_at=1000.0, completed_at=1060.0))
    recorder.record(_finished("b", SessionStatus.FAILED, 0.5, started_at=1000.0, completed_at=1120.0))

    metrics = recorder.snapshot()
    assert metrics.total_launched == 2
    assert metrics.total_cost_usd == 1.5
    assert metrics.cost_per_day == {"1970-01-01": 1.5}
    assert metrics.average_duration_s == 90.0
    assert metrics.sessions_by_status["failed"] == 1


def test_cost_per_day_buckets_by_utc_date() -> None:
    late = datetime(2026, 3, 1, 23, 30, tzinfo=timezone.utc).timestamp()
    early = datetime(2026, 3, 2, 0, 15, tzinfo=timezone.utc).timestamp()
    recorder = MetricsRecorder()
    recorder.record(_finished("a", SessionStatus.COMPLETED, 0.25, started_at=late - 60, completed_at=late))
    recorder.record(_finished("b", SessionStatus.COMPLETED, 0.75, started_at=early - 60, completed_at=early))

    assert recorder.snapshot().cost_per_day == {"2026-03-01": 0.25, "2026-03-02": 0.75}


def test_sessions_without_completion_time_do_not_affect_average() -> None:
    recorder = MetricsRecorder()
    recorder.record(_finished("a", SessionStatus.COMPLETED, 0.0, completed_at=None))

    metrics = recorder.snapshot()
    assert metrics.sessions_with_duration == 0
    assert metrics.average_duration_s is None


def test_most_expensive_keeps_first_on_tie_and_truncates_prompt() -> None:
    recorder = MetricsRecorder()
    recorder.record(_finished("a", SessionStatus.COMPLETED, 2.0, prompt="x" * 120))
    recorder.record(_finished("b", SessionStatus.COMPLETED, 2.0))

    top = recorder.snapshot().most_expensive
    assert top.id == "a"
    assert top.prompt == "x" * 80 + "..."


def test_snapshot_is_a_copy() -> None:
    recorder = MetricsRecorder()
    snapshot = recorder.snapshot()
    snapshot.total_launched = 99
    snapshot.sessions_by_status["completed"] = 99

    fresh = recorder.snapshot()
    assert fresh.total_launched == 0
    assert fresh.sessions_by_status["completed"] == 0


def test_format_metrics() -> None:
    recorder = MetricsRecorder()
    recorder.record_launch()
    recorder.record(_finished("aaaa1111", SessionStatus.COMPLETED, 0.25, prompt="fix the bug"))

    text = format_metrics(recorder.snapshot())

    assert text.startswith("📊 Claude Code usage")
    assert "Sessions launched: 1" in text
    assert "✅ completed: 1" in text
    assert "Total cost: $0.2500" in text
    assert "Average duration: 1m 0s" in text
    assert 'Most expensive: s-aaaa1111 [aaaa1111] $0.2500 "fix the bug"' in text
    assert "Cost per day:" in text


def test_format_metrics_empty() -> None:
    text = format_metrics(MetricsRecorder().snapshot())
    assert "Average duration: n/a" in text
    assert "Most expensive" not in text
