import asyncio
from typing import Any, AsyncIterable

import pytest

from ccbridge.backend.base import AgentBackend, AgentEvent, AgentRun, RunOptions
from ccbridge.notify.router import NotificationRouter
from ccbridge.notify.sink import MessageSink
from ccbridge.notify.wake import WakeDispatcher
from ccbridge.session.manager import SessionManager

_END = object()

CLAUDE_ID_1 = "11111111-1111-4111-8111-111111111111"
CLAUDE_ID_2 = "22222222-2222-4222-8222-222222222222"
CLAUDE_ID_3 = "33333333-3333-4333-8333-333333333333"


class FakeRun(AgentRun):
    """A scripted agent run: tests push events, the session consumes them."""

    def __init__(self, prompt: str | AsyncIterable[str]):
        self.prompt = prompt
        self.queue: asyncio.Queue = asyncio.Queue()
        self.inputs: list[str] = []
        self.aborted = False
        self.interrupts = 0
        self._reader = None
        if isinstance(prompt, str):
            self.inputs.append(prompt)
        else:
            self._reader = asyncio.create_task(self._read_inputs(prompt))

    async def _read_inputs(self, channel: AsyncIterable[str]) -> None:
        async for message in channel:
            self.inputs.append(message)

    def emit(self, kind: str, **payload: Any) -> None:
        self.queue.put_nowait(AgentEvent(kind, payload))

    def init(self, session_id: str = CLAUDE_ID_1) -> None:
        self.emit("init", session_id=session_id)

    def text(self, text: str) -> None:
        self.emit("text", text=text)

    def result(self, subtype: str = "success", cost: float = 0.0, **extra: Any) -> None:
        self.emit("result", subtype=subtype, total_cost_usd=cost, **extra)

    def end(self) -> None:
        self.queue.put_nowait(_END)

    def fail(self, error: Exception) -> None:
        self.queue.put_nowait(error)

    async def events(self):
        while True:
            item = await self.queue.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def abort(self) -> None:
        self.aborted = True
        self.queue.put_nowait(_END)
        if self._reader is not None:
            self._reader.cancel()

    async def interrupt(self) -> None:
        self.interrupts += 1


class FakeBackend(AgentBackend):
    def __init__(self):
        self.runs: list[FakeRun] = []
        self.options: list[RunOptions] = []

    async def start(self, prompt, options: RunOptions) -> AgentRun:
        run = FakeRun(prompt)
        self.runs.append(run)
        self.options.append(options)
        return run


class RecordingSink(MessageSink):
    def __init__(self):
        self.messages: list[tuple[str, str]] = []

    def send(self, channel_id: str, text: str) -> None:
        self.messages.append((channel_id, text))

    def texts(self, channel: str | None = None) -> list[str]:
        return [t for c, t in self.messages if channel is None or c == channel]


class RecordingWake(WakeDispatcher):
    def __init__(self):
        self.direct: list[tuple[str, str, str | None]] = []
        self.broadcasts: list[str] = []
        self.cancelled = 0

    def deliver(self, agent_id: str, text: str, channel_hint: str | None = None) -> None:
        self.direct.append((agent_id, text, channel_hint))

    def deliver_broadcast(self, text: str) -> None:
        self.broadcasts.append(text)

    def cancel_pending(self) -> None:
        self.cancelled += 1


async def settle(seconds: float = 0.01) -> None:
    """Let background tasks (session consumers, timers) run."""
    await asyncio.sleep(seconds)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def wake() -> RecordingWake:
    return RecordingWake()


@pytest.fixture
def make_manager(backend, sink, wake):
    def factory(**kwargs: Any) -> SessionManager:
        router = NotificationRouter(
            sink,
            debounce_s=kwargs.pop("debounce_s", 0.05),
            fallback_channel=kwargs.pop("fallback_channel", None),
        )
        manager = SessionManager(backend, router, wake, **kwargs)
        router.session_provider = manager.list_sessions
        return manager

    return factory
