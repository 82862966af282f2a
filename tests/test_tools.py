import time

import pytest

from ccbridge.config.schema import SessionsConfig
from ccbridge.session.types import SessionStatus
from ccbridge.tools.sessions import create_session_tools
from ccbridge.workspace.resolver import WorkspaceChannelResolver

from conftest import CLAUDE_ID_1, CLAUDE_ID_2, settle

CHAT = "telegram|42"


@pytest.fixture
def tools_for(make_manager):
    def factory(**kwargs):
        defaults = kwargs.pop("defaults", SessionsConfig(default_workdir="/repo", default_budget_usd=2.0))
        resolver = kwargs.pop("resolver", WorkspaceChannelResolver({"/mapped": "slack|C7"}))
        manager = make_manager(**kwargs)
        return manager, create_session_tools(manager, resolver, defaults)

    return factory


async def _launch(tools, backend, **params):
    params.setdefault("prompt", "Refactor the parser")
    result = await tools.execute("claude_launch", params)
    await settle()
    return result, backend.runs[-1]


def test_registry_exposes_all_session_tools(tools_for) -> None:
    _, tools = tools_for()
    assert tools.tool_names == [
        "claude_launch", "claude_respond", "claude_fg", "claude_bg",
        "claude_kill", "claude_output", "claude_sessions", "claude_stats",
    ]
    schemas = tools.get_definitions()
    assert schemas[0]["function"]["name"] == "claude_launch"
    assert schemas[0]["function"]["parameters"]["required"] == ["prompt"]


# ----------------------------------------------------------------------
# claude_launch
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_launch_uses_context_channel_and_agent(tools_for, backend, sink) -> None:
    manager, tools = tools_for()
    tools.set_context("telegram", "42", agent_id="main")

    result, _ = await _launch(tools, backend)

    session = manager.list_sessions()[0]
    assert result.startswith(f"Session refactor-parser [{session.id}] launched.")
    assert "Budget: $2.0000" in result
    assert "Mode: multi-turn" in result
    assert session.origin_channel == CHAT
    assert session.origin_agent_id == "main"
    assert backend.options[-1].workdir == "/repo"
    assert backend.options[-1].permission_mode == "bypassPermissions"
    assert sink.texts(CHAT)[0].startswith("↩️ [refactor-parser] Launched:")
    manager.kill_all()


@pytest.mark.asyncio
async def test_launch_maps_workdir_to_channel_without_context(tools_for, backend) -> None:
    manager, tools = tools_for()
    await _launch(tools, backend, workdir="/mapped/service", multi_turn=False)

    session = manager.list_sessions()[0]
    assert session.origin_channel == "slack|C7"
    assert not session.multi_turn
    manager.kill_all()


@pytest.mark.asyncio
async def test_launch_with_account_scoped_context(tools_for, backend) -> None:
    manager, tools = tools_for()
    tools.set_context("telegram", "42", account_id="bot1")
    await _launch(tools, backend)

    assert manager.list_sessions()[0].origin_channel == "telegram|bot1|42"
    manager.kill_all()


@pytest.mark.asyncio
async def test_launch_reports_capacity_error(tools_for, backend) -> None:
    manager, tools = tools_for(max_sessions=1)
    await _launch(tools, backend)

    result = await tools.execute("claude_launch", {"prompt": "one more"})
    assert result == "Error: Max sessions reached (1). Kill a session first."
    manager.kill_all()


@pytest.mark.asyncio
async def test_launch_rejects_invalid_params(tools_for) -> None:
    _, tools = tools_for()
    result = await tools.execute("claude_launch", {"prompt": "", "max_budget_usd": True})
    assert result.startswith("Error: Invalid parameters for tool 'claude_launch'")
    assert "prompt must be at least 1 chars" in result
    assert "max_budget_usd should be number" in result

    assert await tools.execute("claude_nope", {}) == "Error: Tool 'claude_nope' not found"


@pytest.mark.asyncio
async def test_resume_reuses_persisted_name_and_workdir(tools_for, backend) -> None:
    manager, tools = tools_for()
    _, run = await _launch(tools, backend, name="parser", workdir="/srv/parser", multi_turn=False)
    run.init(CLAUDE_ID_1)
    run.result()
    await settle()
    manager.cleanup(now=time.time() + 7200)

    result, _ = await _launch(tools, backend, prompt="Continue", resume_session_id="parser", fork_session=True)

    assert f"Resuming: {CLAUDE_ID_1} (fork)" in result
    options = backend.options[-1]
    assert options.resume_session_id == CLAUDE_ID_1
    assert options.fork_session
    assert options.workdir == "/srv/parser"
    assert manager.list_sessions()[0].name == "parser"
    manager.kill_all()


@pytest.mark.asyncio
async def test_resume_with_unknown_reference(tools_for) -> None:
    _, tools = tools_for()
    result = await tools.execute("claude_launch", {"prompt": "go", "resume_session_id": "ghost"})
    assert result == 'Error: Could not resolve "ghost" to a Claude session ID.'


# ----------------------------------------------------------------------
# claude_respond
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_respond_sends_message_and_echoes_to_channel(tools_for, backend, sink) -> None:
    manager, tools = tools_for()
    tools.set_context("telegram", "42")
    _, run = await _launch(tools, backend)
    run.init()
    run.result()
    await settle()

    result = await tools.execute("claude_respond", {"session": "refactor-parser", "message": "Use a Pratt parser"})
    await settle()

    assert result.startswith("Message sent to session refactor-parser")
    assert run.inputs[-1] == "Use a Pratt parser"
    assert "↩️ [refactor-parser] Responded:\nUse a Pratt parser" in sink.texts(CHAT)
    manager.kill_all()


@pytest.mark.asyncio
async def test_respond_to_unknown_or_finished_session(tools_for, backend) -> None:
    manager, tools = tools_for()
    assert await tools.execute("claude_respond", {"session": "ghost", "message": "hi"}) == 'Error: Session "ghost" not found.'

    _, run = await _launch(tools, backend, multi_turn=False)
    run.init()
    run.result()
    await settle()
    session = manager.list_sessions()[0]

    result = await tools.execute("claude_respond", {"session": session.id, "message": "more"})
    assert result == (
        f"Error: Session refactor-parser [{session.id}] is not running (status: completed). "
        "Cannot send a message to a non-running session."
    )


@pytest.mark.asyncio
async def test_auto_respond_limit_requires_user_confirmation(tools_for, backend) -> None:
    manager, tools = tools_for(defaults=SessionsConfig(max_auto_responds=2))
    _, run = await _launch(tools, backend)
    run.init()
    await settle()
    session = manager.list_sessions()[0]

    for i in range(2):
        result = await tools.execute("claude_respond", {"session": session.id, "message": f"auto {i}"})
        assert result.startswith("Message sent")
    blocked = await tools.execute("claude_respond", {"session": session.id, "message": "auto 2"})
    assert blocked.startswith("Error: Auto-respond limit reached (2) for session refactor-parser.")
    assert session.auto_respond_count == 2

    confirmed = await tools.execute(
        "claude_respond", {"session": session.id, "message": "from user", "user_initiated": True}
    )
    assert confirmed.startswith("Message sent")
    assert session.auto_respond_count == 0
    manager.kill_all()


@pytest.mark.asyncio
async def test_respond_with_interrupt(tools_for, backend) -> None:
    manager, tools = tools_for()
    _, run = await _launch(tools, backend)
    run.init()
    await settle()

    result = await tools.execute(
        "claude_respond", {"session": "refactor-parser", "message": "stop that", "interrupt": True}
    )
    assert "(interrupted current turn first)" in result
    assert run.interrupts == 1
    manager.kill_all()


# ----------------------------------------------------------------------
# claude_fg / claude_bg
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_foreground_returns_catchup_then_nothing_new(tools_for, backend) -> None:
    manager, tools = tools_for()
    tools.set_context("telegram", "42")
    _, run = await _launch(tools, backend)
    run.init()
    run.text("step one")
    run.text("step two")
    await settle()

    first = await tools.execute("claude_fg", {"session": "refactor-parser"})
    assert "is now in foreground (running" in first
    assert "Catch-up (2 new entries):\nstep one\nstep two" in first

    second = await tools.execute("claude_fg", {"session": "refactor-parser"})
    assert second.endswith("No new output since you last watched.")
    manager.kill_all()


@pytest.mark.asyncio
async def test_foreground_needs_a_channel(tools_for, backend) -> None:
    manager, tools = tools_for()
    await _launch(tools, backend)
    result = await tools.execute("claude_fg", {"session": "refactor-parser"})
    assert result == "Error: Cannot determine which channel to stream to. Pass channel explicitly."
    manager.kill_all()


@pytest.mark.asyncio
async def test_background_detaches_channel(tools_for, backend) -> None:
    manager, tools = tools_for()
    tools.set_context("telegram", "42")
    await _launch(tools, backend)
    session = manager.list_sessions()[0]

    assert await tools.execute("claude_bg", {}) == "No session is currently in foreground."

    await tools.execute("claude_fg", {"session": session.id})
    result = await tools.execute("claude_bg", {})
    assert result == f"Moved to background: refactor-parser [{session.id}]"
    assert session.foreground_channels == set()

    await tools.execute("claude_fg", {"session": session.id})
    named = await tools.execute("claude_bg", {"session": "refactor-parser"})
    assert named == f"Session refactor-parser [{session.id}] moved to background."
    manager.kill_all()


# ----------------------------------------------------------------------
# claude_kill / claude_output / claude_sessions / claude_stats
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_kill_tool(tools_for, backend) -> None:
    manager, tools = tools_for()
    await _launch(tools, backend)
    session = manager.list_sessions()[0]

    assert await tools.execute("claude_kill", {"session": session.id}) == f"Session refactor-parser [{session.id}] killed."
    assert session.kill_reason == "killed on request"
    again = await tools.execute("claude_kill", {"session": session.id})
    assert again == f"Session refactor-parser [{session.id}] is already killed."


@pytest.mark.asyncio
async def test_output_tool(tools_for, backend) -> None:
    manager, tools = tools_for()
    _, run = await _launch(tools, backend)
    session = manager.list_sessions()[0]

    empty = await tools.execute("claude_output", {"session": session.id})
    assert empty.endswith("(no output yet)")

    run.init()
    for i in range(5):
        run.text(f"line {i}")
    await settle()

    last_two = await tools.execute("claude_output", {"session": session.id, "lines": 2})
    assert last_two.endswith("line 3\nline 4")
    assert "line 2" not in last_two

    full = await tools.execute("claude_output", {"session": session.id, "full": True})
    assert full.endswith("\n\nline 0\nline 1\nline 2\nline 3\nline 4")

    bad = await tools.execute("claude_output", {"session": session.id, "lines": 0})
    assert bad.startswith("Error: Invalid parameters")
    manager.kill_all()


@pytest.mark.asyncio
async def test_output_for_cleaned_up_session_points_to_resume(tools_for, backend) -> None:
    manager, tools = tools_for()
    _, run = await _launch(tools, backend, multi_turn=False)
    run.init(CLAUDE_ID_2)
    run.result()
    await settle()
    manager.cleanup(now=time.time() + 7200)

    result = await tools.execute("claude_output", {"session": "refactor-parser"})
    assert "has been cleaned up" in result
    assert f"claude_launch(resume_session_id='{CLAUDE_ID_2}')" in result


@pytest.mark.asyncio
async def test_sessions_tool_lists_live_and_resumable(tools_for, backend) -> None:
    manager, tools = tools_for()
    assert await tools.execute("claude_sessions", {}) == "No sessions."

    _, run = await _launch(tools, backend, name="old", multi_turn=False)
    run.init(CLAUDE_ID_1)
    run.result(cost=0.3)
    await settle()
    manager.cleanup(now=time.time() + 7200)
    await _launch(tools, backend, name="live")

    listing = await tools.execute("claude_sessions", {})
    assert listing.startswith("🟡 live [")
    assert "Resumable (cleaned up):" in listing
    assert "old [" in listing and CLAUDE_ID_1 in listing

    running_only = await tools.execute("claude_sessions", {"status": "completed"})
    assert running_only == "No sessions."

    assert (await tools.execute("claude_sessions", {"status": "paused"})).startswith("Error: Invalid parameters")
    manager.kill_all()


@pytest.mark.asyncio
async def test_stats_tool(tools_for, backend) -> None:
    manager, tools = tools_for()
    _, run = await _launch(tools, backend, multi_turn=False)
    run.init()
    run.result(cost=1.5)
    await settle()

    stats = await tools.execute("claude_stats", {})
    assert stats.startswith("📊 Claude Code usage")
    assert "Sessions launched: 1" in stats
    assert "Total cost: $1.5000" in stats
    assert manager.get_metrics().sessions_by_status[SessionStatus.COMPLETED.value] == 1
