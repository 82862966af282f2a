"""
Claude Code CLI 后端实现。

以 asyncio 子进程方式运行 `claude`，输入输出均使用 stream-json 格式：
- stdin：每行一条 {"type": "user", "message": {...}}，输入结束后关闭 stdin
- stdout：每行一个 JSON 事件（system/init、assistant、result 等）

本模块负责把 CLI 的原始 JSON 行翻译成 AgentEvent：
  {"type": "system", "subtype": "init"}         → init
  {"type": "assistant", content: [text...]}     → text（每个文本块一个事件）
  {"type": "assistant", content: [tool_use...]} → tool_use
  {"type": "result"}                            → result
"""

import asyncio
import json
import os
import uuid
from collections import deque
from typing import Any, AsyncIterable, AsyncIterator

from loguru import logger

from ccbridge.backend.base import AgentBackend, AgentEvent, AgentRun, RunOptions
from ccbridge.errors import StreamFailureError

# 单行 JSON 的最大长度（工具结果可能很长，默认 64KB 不够用）
_STREAM_LIMIT = 16 * 1024 * 1024


def build_cli_args(cli_path: str, options: RunOptions, extra_args: list[str] | None = None) -> list[str]:
    """根据运行参数组装 claude 命令行。"""
    args = [
        cli_path,
        "--print",
        "--verbose",
        "--output-format", "stream-json",
        "--input-format", "stream-json",
    ]
    if options.model:
        args += ["--model", options.model]
    if options.permission_mode:
        args += ["--permission-mode", options.permission_mode]
    if options.max_budget_usd is not None:
        args += ["--max-budget-usd", str(options.max_budget_usd)]
    if options.resume_session_id:
        args += ["--resume", options.resume_session_id]
        if options.fork_session:
            args.append("--fork-session")
    if options.system_prompt:
        args += ["--append-system-prompt", options.system_prompt]
    if options.allowed_tools:
        args += ["--allowedTools", ",".join(options.allowed_tools)]
    return args + list(extra_args or [])


def translate_line(data: dict[str, Any]) -> list[AgentEvent]:
    """把 CLI 输出的一条 JSON 记录翻译为零个或多个 AgentEvent。"""
    kind = data.get("type")

    if kind == "system" and data.get("subtype") == "init":
        return [AgentEvent("init", {"session_id": data.get("session_id")})]

    if kind == "assistant":
        events = []
        for block in data.get("message", {}).get("content", []) or []:
            if block.get("type") == "text" and block.get("text"):
                events.append(AgentEvent("text", {"text": block["text"]}))
            elif block.get("type") == "tool_use":
                events.append(AgentEvent("tool_use", {
                    "name": block.get("name", "?"),
                    "input": block.get("input") or {},
                }))
        return events

    if kind == "result":
        return [AgentEvent("result", {
            "subtype": data.get("subtype", "success"),
            "total_cost_usd": data.get("total_cost_usd") or 0.0,
            "result": data.get("result"),
            "is_error": bool(data.get("is_error")),
            "errors": data.get("errors") or [],
            "session_id": data.get("session_id"),
        })]

    return []


def _user_message(text: str) -> bytes:
    line = {"type": "user", "message": {"role": "user", "content": text}}
    return (json.dumps(line) + "\n").encode("utf-8")


class ClaudeCliRun(AgentRun):
    """一次 claude 子进程运行。"""

    def __init__(self, process: asyncio.subprocess.Process, prompt: str | AsyncIterable[str]):
        self._process = process
        self._aborted = False
        self._stderr_tail: deque[str] = deque(maxlen=20)
        self._writer = asyncio.create_task(self._write_input(prompt))
        self._stderr_reader = asyncio.create_task(self._drain_stderr())

    async def _write_input(self, prompt: str | AsyncIterable[str]) -> None:
        """把提示词（或多轮通道中的消息）逐条写入 stdin，输入结束后关闭 stdin。"""
        stdin = self._process.stdin
        try:
            if isinstance(prompt, str):
                stdin.write(_user_message(prompt))
                await stdin.drain()
            else:
                async for message in prompt:
                    stdin.write(_user_message(message))
                    await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            if not self._aborted:
                logger.warning(f"Claude CLI stdin closed early: {e}")
        finally:
            if not stdin.is_closing():
                stdin.close()

    async def _drain_stderr(self) -> None:
        """持续读取 stderr，避免管道写满阻塞子进程，并保留末尾若干行用于报错。"""
        async for raw in self._process.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self._stderr_tail.append(line)

    async def events(self) -> AsyncIterator[AgentEvent]:
        saw_result = False
        async for raw in self._process.stdout:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"Skipping non-JSON line from Claude CLI: {line[:120]}")
                continue
            for event in translate_line(data):
                saw_result = saw_result or event.kind == "result"
                yield event

        returncode = await self._process.wait()
        self._writer.cancel()
        if returncode != 0 and not saw_result and not self._aborted:
            detail = "\n".join(self._stderr_tail) or f"exit code {returncode}"
            raise StreamFailureError(f"Claude CLI exited with code {returncode}: {detail}")

    def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._writer.cancel()
        if self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    async def interrupt(self) -> None:
        """通过 stream-json 控制请求打断当前回合。"""
        request = {
            "type": "control_request",
            "request_id": uuid.uuid4().hex,
            "request": {"subtype": "interrupt"},
        }
        stdin = self._process.stdin
        if stdin.is_closing():
            raise StreamFailureError("Cannot interrupt: input stream already closed")
        stdin.write((json.dumps(request) + "\n").encode("utf-8"))
        await stdin.drain()


class ClaudeCliBackend(AgentBackend):
    """
    基于 claude CLI 子进程的 Agent 后端。

    参数:
        cli_path: claude 可执行文件路径
        extra_args: 追加到每次启动的额外命令行参数
    """

    def __init__(self, cli_path: str = "claude", extra_args: list[str] | None = None):
        self.cli_path = cli_path
        self.extra_args = list(extra_args or [])

    async def start(self, prompt: str | AsyncIterable[str], options: RunOptions) -> AgentRun:
        args = build_cli_args(self.cli_path, options, self.extra_args)
        cwd = os.path.expanduser(options.workdir)
        logger.debug(f"Starting Claude CLI in {cwd}: {' '.join(args[1:])}")
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            limit=_STREAM_LIMIT,
        )
        return ClaudeCliRun(process, prompt)
