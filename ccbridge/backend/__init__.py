"""
Agent 后端模块 - 把外部对话 Agent 抽象为可中止的事件流。

- base.py：AgentBackend / AgentRun / AgentEvent 抽象
- claude_cli.py：基于 claude CLI 子进程（stream-json）的实现
"""

from ccbridge.backend.base import AgentBackend, AgentEvent, AgentRun, RunOptions
from ccbridge.backend.claude_cli import ClaudeCliBackend

__all__ = ["AgentBackend", "AgentEvent", "AgentRun", "RunOptions", "ClaudeCliBackend"]
