"""
插件内的工具注册表。

ToolRegistry.execute() 在工具不存在或参数非法时抛出 ToolNotFound / ToolArgumentError，
由 ToolRouter 统一捕获并写入结果信封。
"""

from typing import Any

from orchestra.agent.tools.base import Tool
from orchestra.agent.tools.ref import ToolDescriptor
from orchestra.errors import ToolArgumentError, ToolNotFound


class ToolRegistry:
    """按工具名保存一个插件的 Tool，注册顺序即展示顺序。"""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """注册工具，同名覆盖。"""
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def descriptors(self, plugin_id: str, only: str | None = None) -> list[ToolDescriptor]:
        """
        以插件身份列出工具描述。

        参数:
            plugin_id: 所属插件 ID
            only: 只列出这一个工具（None 表示全部）
        """
        return [
            tool.describe(plugin_id)
            for name, tool in self._tools.items()
            if only is None or name == only
        ]

    async def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        """
        转换、校验参数后执行工具。

        异常:
            ToolNotFound: 工具不存在
            ToolArgumentError: 参数校验失败
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFound(f"Tool '{name}' not found")

        arguments, problems = tool.prepare(arguments)
        if problems:
            raise ToolArgumentError(f"Invalid parameters for tool '{name}': " + "; ".join(problems))
        return await tool.execute(**arguments)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
