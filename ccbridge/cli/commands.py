"""
CLI 命令模块 - ccbridge 的命令行入口。

命令：
- onboard：写入默认配置文件
- status：查看配置、会话上限、唤醒方式与工作区映射
- run：在终端里直接运行一个 Claude Code 会话（输出实时打印，多轮模式下可继续输入）

技术栈：
- Typer：CLI 框架
- Rich：终端输出（表格、颜色）
- prompt_toolkit：交互式输入（历史记录、行编辑）
"""

import asyncio
import shutil

import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout

from ccbridge import __logo__, __version__
from ccbridge.bus.events import OutboundMessage
from ccbridge.bus.queue import MessageBus
from ccbridge.utils.helpers import ensure_dir, get_data_path

app = typer.Typer(
    name="ccbridge",
    help=f"{__logo__} ccbridge - Claude Code session bridge",
    no_args_is_help=True,
)

console = Console()
EXIT_COMMANDS = {"exit", "quit", "/exit", "/quit", ":q"}

# 终端模式下会话通知使用的渠道地址
CLI_CHANNEL = "cli|direct"


def _is_exit_command(command: str) -> bool:
    return command.lower() in EXIT_COMMANDS


def _make_prompt_session() -> PromptSession:
    """创建带持久化历史记录的 prompt_toolkit 会话（~/.ccbridge/history/cli_history）。"""
    history_file = ensure_dir(get_data_path() / "history") / "cli_history"
    return PromptSession(
        history=FileHistory(str(history_file)),
        enable_open_in_editor=False,
        multiline=False,
    )


async def _read_follow_up(prompt_session: PromptSession) -> str:
    try:
        with patch_stdout():
            return await prompt_session.prompt_async(HTML("<b fg='ansiblue'>You:</b> "))
    except EOFError as exc:
        raise KeyboardInterrupt from exc


async def _print_notification(msg: OutboundMessage) -> None:
    console.print(Text(msg.content))


async def _drain_outbound(bus: MessageBus, timeout_s: float = 2.0) -> None:
    """等待出站队列中剩余的通知打印完，再停止分发器。"""
    deadline = asyncio.get_running_loop().time() + timeout_s
    while bus.outbound_size and asyncio.get_running_loop().time() < deadline:
        await asyncio.sleep(0.05)
    bus.stop()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} ccbridge v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """ccbridge CLI 根命令回调。"""
    pass


# ============================================================================
# Onboard / Status
# ============================================================================


@app.command()
def onboard():
    """在 ~/.ccbridge/config.json 写入默认配置。"""
    from ccbridge.config.loader import get_config_path, save_config
    from ccbridge.config.schema import Config

    config_path = get_config_path()
    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    save_config(Config())
    console.print(f"[green]✓[/green] Created config at {config_path}")
    console.print(f"\n{__logo__} ccbridge is ready!")
    console.print("\nNext steps:")
    console.print("  1. Map workspaces to chat channels under [cyan]agentChannels[/cyan] in the config")
    console.print("  2. Try it: [cyan]ccbridge run \"Summarize this repository\" -w .[/cyan]")


@app.command()
def status():
    """显示配置与运行参数。"""
    from ccbridge.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} ccbridge Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")

    claude_bin = shutil.which(config.claude.cli_path)
    console.print(f"Claude CLI: {claude_bin or config.claude.cli_path} "
                  f"{'[green]✓[/green]' if claude_bin else '[red]✗ not found[/red]'}")

    sessions = config.sessions
    console.print(f"Max sessions: {sessions.max_sessions} (persisted: {sessions.max_persisted_sessions})")
    console.print(f"Default budget: ${sessions.default_budget_usd:.2f} | model: {sessions.default_model or '[dim]CLI default[/dim]'}")
    console.print(f"Default workdir: {config.default_workdir_path}")
    console.print(f"Idle timeout: {sessions.idle_timeout_minutes} min | stall watchdog: {sessions.stall_timeout_s}s")

    wake = config.wake
    if wake.mode == "cli":
        wake_bin = shutil.which(wake.cli_path)
        console.print(f"Wake: cli ({wake_bin or wake.cli_path}) "
                      f"{'[green]✓[/green]' if wake_bin else '[yellow]not found[/yellow]'}")
    else:
        console.print("Wake: message bus")

    fallback = config.notifications.fallback_channel
    console.print(f"Fallback channel: {fallback or '[dim]not set[/dim]'}")

    if config.agent_channels:
        table = Table(title="Workspace channels")
        table.add_column("Workspace", style="cyan")
        table.add_column("Channel", style="green")
        for path, channel in sorted(config.agent_channels.items()):
            table.add_row(path, channel)
        console.print(table)
    else:
        console.print("Workspace channels: [dim]none[/dim]")


# ============================================================================
# Run
# ============================================================================


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Task for Claude Code"),
    workdir: str = typer.Option(None, "--workdir", "-w", help="Working directory"),
    name: str = typer.Option(None, "--name", "-n", help="Session name"),
    model: str = typer.Option(None, "--model", "-m", help="Model to use"),
    budget: float = typer.Option(None, "--budget", "-b", help="Budget cap in USD"),
    single_turn: bool = typer.Option(False, "--single-turn", help="Exit after the first result"),
    resume: str = typer.Option(None, "--resume", "-r", help="Claude session ID to resume"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show ccbridge runtime logs"),
):
    """
    在终端中运行一个 Claude Code 会话。

    输出实时打印到终端；多轮模式下每个回合结束后可以继续输入，
    输入 exit 结束会话，Ctrl+C 直接终止。
    """
    from loguru import logger

    from ccbridge.config.loader import load_config
    from ccbridge.service import BridgeService
    from ccbridge.session.types import SessionConfig

    if logs:
        logger.enable("ccbridge")
    else:
        logger.disable("ccbridge")

    config = load_config()
    bus = MessageBus()
    # 终端模式下没有编排 Agent，不发唤醒
    service = BridgeService.from_config(config, bus=bus, wake_agent=False)
    bus.subscribe_outbound("cli", _print_notification)
    sessions = config.sessions

    async def run_session():
        dispatcher = asyncio.create_task(bus.dispatch_outbound())
        await service.start()
        session = service.manager.spawn(SessionConfig(
            prompt=prompt,
            workdir=workdir or sessions.default_workdir,
            name=name,
            model=model or sessions.default_model,
            max_budget_usd=budget if budget is not None else sessions.default_budget_usd,
            origin_channel=CLI_CHANNEL,
            multi_turn=not single_turn and sessions.multi_turn,
            resume_session_id=resume,
            permission_mode=sessions.permission_mode,
        ))
        session.foreground(CLI_CHANNEL)
        prompt_session = _make_prompt_session() if session.multi_turn else None

        try:
            while session.is_active:
                if prompt_session is not None and session.waiting_for_input:
                    command = (await _read_follow_up(prompt_session)).strip()
                    if not command:
                        continue
                    if _is_exit_command(command):
                        session.end_input()
                        break
                    if session.waiting_for_input:
                        session.send_message(command)
                    continue
                await asyncio.sleep(0.2)

            while session.is_active:
                await asyncio.sleep(0.2)
        except KeyboardInterrupt:
            service.manager.kill(session.id, reason="interrupted")
        finally:
            service.router.flush_all()
            service.stop()
            await _drain_outbound(bus)
            await dispatcher

        summary = f"\n{session.name} [{session.id}] {session.status.value} (${session.cost_usd:.4f})"
        if session.claude_session_id:
            summary += f" | resume with: ccbridge run -r {session.claude_session_id} ..."
        console.print(Text(summary, style="dim"))

    try:
        asyncio.run(run_session())
    except KeyboardInterrupt:
        console.print("\nGoodbye!")


if __name__ == "__main__":
    app()
