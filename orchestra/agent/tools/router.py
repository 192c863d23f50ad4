"""
工具调度路由器 (agent/tools/router.py)

模块职责：
    把模型产生的工具调用分发到对应的后端，并把结果（或错误）统一包装为 ToolResult。

    1. 组装 schema：按 Agent 配置中选中的能力，向各后端收集 ToolDescriptor
    2. 调度：解析参数 JSON → 解码组合工具名 → 交给对应类型的后端执行
    3. 任何错误都被写入结果信封 {"error": ...}，不会抛出到 Agent 循环

【调用顺序】
    同一轮的多个工具调用由 Agent 循环按顺序逐个调用 dispatch()，
    每个结果作为一条 tool 消息追加后才开始下一个调用。
"""

import json
from dataclasses import dataclass
from typing import Any

from loguru import logger

from orchestra.agent.tools.backends import ToolBackend
from orchestra.agent.tools.ref import ToolDescriptor, ToolKind, decode_tool_name
from orchestra.config.schema import AgentProfile
from orchestra.errors import ToolError, ToolNotFound
from orchestra.providers.base import ToolCall

ARGUMENTS_ERROR = "tool call arguments error"


@dataclass
class ToolResult:
    """
    一次工具调用的结果信封。

    属性:
        name: 组合工具名
        arguments: 解析后的参数
        result: 后端返回值；失败时为 {"error": 原因}
    """
    name: str
    arguments: dict[str, Any]
    result: Any

    @property
    def is_error(self) -> bool:
        return isinstance(self.result, dict) and "error" in self.result

    @property
    def content(self) -> str:
        """写入 tool 消息的文本。"""
        if isinstance(self.result, str):
            return self.result
        return json.dumps(self.result, ensure_ascii=False, default=str)


def selection_from_profile(profile: AgentProfile) -> dict[ToolKind, list[str]]:
    """把 Agent 配置中的能力列表转换为 {工具类型: ID 列表}。"""
    builtins = []
    if profile.vision:
        builtins.append("VISION")
    if profile.image:
        builtins.append("IMAGE")
    return {
        ToolKind.PLUGIN: list(profile.tools),
        ToolKind.KNOWLEDGE: list(profile.knowledges),
        ToolKind.WORKFLOW: list(profile.workflows),
        ToolKind.AGENT: list(profile.agents),
        ToolKind.SKILL: list(profile.skills),
        ToolKind.EXTERNAL: list(profile.mcp),
        ToolKind.BUILTIN: builtins,
    }


class ToolRouter:
    """
    工具调度路由器，按 ToolKind 持有各类后端。
    """

    def __init__(self, backends: list[ToolBackend] | None = None):
        self._backends: dict[ToolKind, ToolBackend] = {}
        for backend in backends or []:
            self.register_backend(backend)

    def register_backend(self, backend: ToolBackend) -> None:
        self._backends[backend.kind] = backend

    def backend(self, kind: ToolKind) -> ToolBackend | None:
        return self._backends.get(kind)

    async def assemble_schema(self, selection: dict[ToolKind, list[str]]) -> list[dict[str, Any]]:
        """
        根据选择收集工具定义。

        参数:
            selection: {工具类型: ID 列表}，空列表的类型会被跳过

        返回:
            OpenAI Function Calling 格式的工具定义列表
        """
        descriptors: list[ToolDescriptor] = []
        for kind, ids in selection.items():
            if not ids:
                continue
            backend = self._backends.get(kind)
            if backend is None:
                logger.warning(f"No backend registered for {kind.value} tools, skipped")
                continue
            descriptors.extend(await backend.list_tools(ids))

        schema = []
        for d in descriptors:
            try:
                schema.append(d.to_schema())
            except ValueError as e:
                logger.warning(f"Skipping tool {d.ref}: {e}")
        return schema

    async def dispatch(self, call: ToolCall) -> ToolResult:
        """
        执行一次工具调用，永不抛出。

        参数:
            call: 模型产生的工具调用（arguments 为 JSON 字符串）
        """
        try:
            arguments = json.loads(call.arguments) if call.arguments.strip() else {}
        except json.JSONDecodeError:
            arguments = None
        if not isinstance(arguments, dict):
            logger.warning(f"Tool call {call.name} has malformed arguments: {call.arguments[:200]}")
            return ToolResult(call.name, {}, {"error": ARGUMENTS_ERROR})

        args_str = json.dumps(arguments, ensure_ascii=False)
        logger.info(f"Tool call: {call.name}({args_str[:200]})")

        try:
            ref = decode_tool_name(call.name)
            backend = self._backends.get(ref.kind)
            if backend is None:
                raise ToolNotFound(f"No backend for tool {call.name}")
            result = await backend.execute(ref, arguments)
        except ToolError as e:
            logger.warning(f"Tool {call.name} failed: {e}")
            return ToolResult(call.name, arguments, {"error": str(e)})
        except Exception as e:
            logger.error(f"Error executing tool {call.name}: {e}")
            return ToolResult(call.name, arguments, {"error": f"Error executing {call.name}: {e}"})

        return ToolResult(call.name, arguments, result)

    def describe(self, name: str) -> str:
        """工具的展示名称；无法解析时原样返回。"""
        try:
            ref = decode_tool_name(name)
        except ToolNotFound:
            return name
        backend = self._backends.get(ref.kind)
        return backend.display_name(ref) if backend else name

    async def cancel(self) -> None:
        """通知所有后端取消仍在进行的长任务。"""
        for backend in self._backends.values():
            await backend.cancel()
