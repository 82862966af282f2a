"""
工具注册表模块 (tools/registry.py)

管理会话控制工具的注册、查找与执行，是编排 Agent 与会话管理器之间的边界：
execute() 从不抛出异常，所有失败都转换为 "Error: ..." 文本返回给 Agent。

设计模式对比（Java 视角）：
    类似一个轻量级的 ServiceRegistry<Tool>，register() ≈ 注册 Bean，execute() ≈ 查找并调用。
"""

from typing import Any

from loguru import logger

from ccbridge.errors import BridgeError
from ccbridge.tools.base import Tool


class ToolRegistry:
    """会话控制工具注册表。"""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """注册工具（同名覆盖）。"""
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def get_definitions(self) -> list[dict[str, Any]]:
        """所有工具的 Function Calling 定义。"""
        return [tool.to_schema() for tool in self._tools.values()]

    def set_context(
        self,
        channel: str,
        chat_id: str,
        agent_id: str | None = None,
        account_id: str | None = None,
    ) -> None:
        """
        为所有支持上下文的工具设置当前对话的渠道与编排 Agent。

        会话的通知会发回这个渠道，完成后唤醒这个 Agent。
        """
        for tool in self._tools.values():
            if hasattr(tool, "set_context"):
                tool.set_context(channel, chat_id, agent_id=agent_id, account_id=account_id)

    async def execute(self, name: str, params: dict[str, Any]) -> str:
        """
        按名称执行工具：查找 → 校验参数 → 执行。

        返回:
            执行结果文本；工具不存在、参数非法或执行出错时返回 "Error: ..." 文本
        """
        tool = self._tools.get(name)
        if not tool:
            return f"Error: Tool '{name}' not found"

        try:
            errors = tool.validate_params(params)
            if errors:
                return f"Error: Invalid parameters for tool '{name}': " + "; ".join(errors)
            return await tool.execute(**params)
        except BridgeError as e:
            return f"Error: {e}"
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}")
            return f"Error executing {name}: {str(e)}"

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
