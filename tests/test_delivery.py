import asyncio

import pytest

from ccbridge.bus.events import parse_channel_address
from ccbridge.bus.queue import MessageBus
from ccbridge.config.schema import Config
from ccbridge.errors import DeliveryError
from ccbridge.notify.sink import BusMessageSink
from ccbridge.notify.wake import BusWakeDispatcher, CliWakeDispatcher, build_deliver_args
from ccbridge.service import BridgeService, create_wake_dispatcher
from ccbridge.session.types import SessionConfig

from conftest import FakeBackend, RecordingSink, settle


def test_parse_channel_address() -> None:
    assert parse_channel_address("telegram|123") == ("telegram", None, "123")
    assert parse_channel_address("telegram|bot1|123") == ("telegram", "bot1", "123")
    assert parse_channel_address("slack|acct|C1|thread") == ("slack", "acct", "C1|thread")
    assert parse_channel_address("telegram") is None
    assert parse_channel_address("|123") is None


# ----------------------------------------------------------------------
# Message sinks
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_bus_sink_publishes_outbound_message() -> None:
    bus = MessageBus()
    BusMessageSink(bus).send("telegram|bot1|123", "hello")

    msg = bus.outbound.get_nowait()
    assert (msg.channel, msg.account_id, msg.chat_id, msg.content) == ("telegram", "bot1", "123", "hello")


@pytest.mark.asyncio
async def test_bus_sink_rejects_malformed_address() -> None:
    with pytest.raises(DeliveryError):
        BusMessageSink(MessageBus()).send("nowhere", "hello")


@pytest.mark.asyncio
async def test_outbound_dispatch_reaches_channel_subscribers() -> None:
    bus = MessageBus()
    received = []

    async def on_cli(msg):
        received.append(("cli", msg.content))

    async def on_any(msg):
        received.append(("*", msg.content))

    async def broken(msg):
        raise RuntimeError("subscriber down")

    bus.subscribe_outbound("cli", broken)
    bus.subscribe_outbound("cli", on_cli)
    bus.subscribe_outbound("*", on_any)
    dispatcher = asyncio.create_task(bus.dispatch_outbound())

    sink = BusMessageSink(bus)
    sink.send("cli|direct", "hello")
    sink.send("telegram|1", "elsewhere")
    await settle(0.05)
    bus.stop()
    await asyncio.wait_for(dispatcher, timeout=2)

    assert received == [("cli", "hello"), ("*", "hello"), ("*", "elsewhere")]


# ----------------------------------------------------------------------
# Wake dispatch
# ----------------------------------------------------------------------


def test_deliver_args_from_channel_hint() -> None:
    assert build_deliver_args("telegram|123") == ["--deliver", "--reply-channel", "telegram", "--reply-to", "123"]
    assert build_deliver_args("telegram|bot1|123") == [
        "--deliver", "--reply-channel", "telegram", "--reply-account", "bot1", "--reply-to", "123",
    ]
    for hint in (None, "", "unknown", "gateway", "garbage"):
        assert build_deliver_args(hint) == []


@pytest.mark.asyncio
async def test_bus_wake_publishes_system_message() -> None:
    bus = MessageBus()
    wake = BusWakeDispatcher(bus)

    wake.deliver("main", "session done", "telegram|bot1|123")
    wake.deliver_broadcast("someone look")

    direct = await bus.consume_inbound()
    assert direct.channel == "system"
    assert direct.sender_id == "ccbridge"
    assert direct.chat_id == "telegram:123"
    assert direct.metadata == {"agent_id": "main"}

    broadcast = await bus.consume_inbound()
    assert broadcast.chat_id == "cli:direct"
    assert broadcast.metadata == {"broadcast": True}


@pytest.mark.asyncio
async def test_cli_broadcast_retries_exactly_once(monkeypatch) -> None:
    wake = CliWakeDispatcher(cli_path="openclaw", timeout_s=1, retry_delay_s=0.01)
    calls = []

    async def failing_run(args):
        calls.append(args)
        raise DeliveryError("exit code 1")

    monkeypatch.setattr(wake, "_run", failing_run)
    wake.deliver_broadcast("wake up")
    await settle(0.05)

    assert len(calls) == 2
    assert calls[0] == ["openclaw", "system", "event", "--text", "wake up", "--mode", "now"]
    assert wake.pending == 0


@pytest.mark.asyncio
async def test_cli_broadcast_succeeds_without_retry(monkeypatch) -> None:
    wake = CliWakeDispatcher(retry_delay_s=0.01)
    calls = []

    async def ok_run(args):
        calls.append(args)

    monkeypatch.setattr(wake, "_run", ok_run)
    wake.deliver_broadcast("wake up")
    await settle(0.05)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_cancel_pending_stops_scheduled_retry(monkeypatch) -> None:
    wake = CliWakeDispatcher(retry_delay_s=10)
    calls = []

    async def failing_run(args):
        calls.append(args)
        raise DeliveryError("timed out after 30s")

    monkeypatch.setattr(wake, "_run", failing_run)
    wake.deliver_broadcast("wake up")
    await settle()
    assert wake.pending == 1

    wake.cancel_pending()
    await asyncio.sleep(0)
    assert wake.pending == 0
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_cli_run_reports_missing_binary() -> None:
    wake = CliWakeDispatcher(cli_path="/nonexistent/openclaw-binary")
    with pytest.raises(DeliveryError, match="cannot run"):
        await wake._run(["/nonexistent/openclaw-binary", "system", "event"])


def test_wake_dispatcher_follows_config() -> None:
    bus = MessageBus()
    config = Config()
    assert isinstance(create_wake_dispatcher(config, bus), CliWakeDispatcher)
    config.wake.mode = "bus"
    assert isinstance(create_wake_dispatcher(config, bus), BusWakeDispatcher)


# ----------------------------------------------------------------------
# Service wiring
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_service_wires_components_from_config() -> None:
    config = Config()
    config.sessions.max_sessions = 2
    config.notifications.fallback_channel = "telegram|ops"
    config.agent_channels["/srv/api"] = "slack|C1"
    backend, sink = FakeBackend(), RecordingSink()

    service = BridgeService.from_config(config, backend=backend, sink=sink)

    assert service.manager.max_sessions == 2
    assert service.router.fallback_channel == "telegram|ops"
    assert service.router.debounce_s == 0.5
    assert service.resolver.resolve("/srv/api/src") == "slack|C1"
    assert "claude_launch" in service.tools
    assert isinstance(service.wake, CliWakeDispatcher)

    await service.start()
    session = service.manager.spawn(SessionConfig(prompt="Ship it", workdir="/srv/api"))
    await settle()
    assert sink.texts("telegram|ops") == ["↩️ [ship] Launched:\nShip it"]

    service.stop()
    assert session.is_terminal
    assert service.router._task is None


@pytest.mark.asyncio
async def test_service_without_agent_wake_finishes_sessions_quietly() -> None:
    backend, sink = FakeBackend(), RecordingSink()
    service = BridgeService.from_config(Config(), backend=backend, sink=sink, wake_agent=False)
    assert service.wake is None
    assert service.manager.wake is None

    session = service.manager.spawn(SessionConfig(prompt="Ship it", workdir="/repo", origin_channel="cli|direct", multi_turn=False))
    await settle()
    run = backend.runs[-1]
    run.init()
    run.result(cost=0.1)
    await settle()

    assert session.status.value == "completed"
    assert any(t.startswith("✅ [ship] Completed") for t in sink.texts("cli|direct"))
    assert service.bus.inbound.empty()
