"""
工具后端 (agent/tools/backends.py)

每种工具来源（插件、知识库、工作流、技能……）对应一个 ToolBackend：
- list_tools(ids): 作为能力注册表，给出选中实体的 ToolDescriptor
- execute(ref, arguments): 执行一次工具调用

后端可以直接抛出 ToolError（ToolNotFound / ToolArgumentError），
由 ToolRouter 统一写入结果信封。

子 Agent 后端在 agent/subagent.py，外部工具服务器在 mcp.py，内置工具在 builtin.py。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from loguru import logger

from orchestra.agent.skills import SkillsLoader
from orchestra.agent.tools.ref import ToolDescriptor, ToolKind, ToolRef, decode_tool_name
from orchestra.agent.tools.registry import ToolRegistry
from orchestra.errors import ToolArgumentError, ToolNotFound
from orchestra.knowledge.engine import KnowledgeEngine


class ToolBackend(ABC):
    """工具后端抽象基类。"""

    kind: ToolKind

    @abstractmethod
    async def list_tools(self, ids: list[str] | None = None) -> list[ToolDescriptor]:
        """
        列出可用工具。

        参数:
            ids: 只列出这些实体的工具；None 表示全部
        """

    @abstractmethod
    async def execute(self, ref: ToolRef, arguments: dict[str, Any]) -> Any:
        """执行一次工具调用，返回字符串或可 JSON 序列化的结果。"""

    def display_name(self, ref: ToolRef) -> str:
        """用于界面展示的工具名。"""
        return ref.tool or ref.id

    async def cancel(self) -> None:
        """取消后端内仍在进行的长任务，默认无事可做。"""


# ==============================================================================
# 插件
# ==============================================================================


@dataclass
class Plugin:
    """
    插件：一组共享同一插件 ID 的工具。

    属性:
        id: 插件 ID（不能包含 "-"）
        name: 插件显示名称
        registry: 插件内的工具注册表
    """
    id: str
    name: str = ""
    description: str = ""
    registry: ToolRegistry = field(default_factory=ToolRegistry)


class PluginBackend(ToolBackend):
    """插件工具后端。组合工具名为 "<工具名>-<插件ID>"。"""

    kind = ToolKind.PLUGIN

    def __init__(self, plugins: list[Plugin] | None = None):
        self._plugins: dict[str, Plugin] = {}
        for plugin in plugins or []:
            self.register(plugin)

    def register(self, plugin: Plugin) -> None:
        self._plugins[plugin.id] = plugin

    def get(self, plugin_id: str) -> Plugin | None:
        return self._plugins.get(plugin_id)

    async def list_tools(self, ids: list[str] | None = None) -> list[ToolDescriptor]:
        """
        ids 中的元素可以是插件 ID（选中插件内全部工具），
        也可以是组合工具名（只选中这一个工具）。
        """
        selected: list[tuple[Plugin, str | None]] = []
        if ids is None:
            selected = [(p, None) for p in self._plugins.values()]
        else:
            for item in ids:
                if item in self._plugins:
                    selected.append((self._plugins[item], None))
                    continue
                try:
                    ref = decode_tool_name(item)
                except ToolNotFound:
                    ref = None
                plugin = self._plugins.get(ref.id) if ref and ref.kind is ToolKind.PLUGIN else None
                if plugin is None:
                    logger.warning(f"Plugin tool {item} not found, skipped")
                    continue
                selected.append((plugin, ref.tool))

        descriptors = []
        for plugin, only in selected:
            descriptors.extend(plugin.registry.descriptors(plugin.id, only))
        return descriptors

    async def execute(self, ref: ToolRef, arguments: dict[str, Any]) -> Any:
        plugin = self._plugins.get(ref.id)
        if plugin is None:
            raise ToolNotFound(f"Plugin '{ref.id}' not found")
        return await plugin.registry.execute(ref.tool, arguments)

    def display_name(self, ref: ToolRef) -> str:
        plugin = self._plugins.get(ref.id)
        return f"{plugin.name or plugin.id}/{ref.tool}" if plugin else ref.tool


# ==============================================================================
# 知识库
# ==============================================================================

KNOWLEDGE_PARAMETERS = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "description": "查询字段或内容"},
    },
    "required": ["query"],
}


class KnowledgeBackend(ToolBackend):
    """知识库检索工具。每个知识库对应一个 "knowledge-<ID>" 工具，描述取知识库描述。"""

    kind = ToolKind.KNOWLEDGE

    def __init__(self, engine: KnowledgeEngine):
        self.engine = engine

    async def list_tools(self, ids: list[str] | None = None) -> list[ToolDescriptor]:
        metas = self.engine.list()
        if ids is not None:
            wanted = set(ids)
            metas = [m for m in metas if m.id in wanted]
        return [
            ToolDescriptor(
                ref=ToolRef(ToolKind.KNOWLEDGE, m.id),
                description=m.description or f"检索知识库「{m.name}」",
                parameters=KNOWLEDGE_PARAMETERS,
            )
            for m in metas
        ]

    async def execute(self, ref: ToolRef, arguments: dict[str, Any]) -> Any:
        query = arguments.get("query")
        if not isinstance(query, str) or not query.strip():
            raise ToolArgumentError("the query content can't be empty")
        results = await self.engine.search(query, [ref.id])
        return [r.model_dump() for r in results]

    def display_name(self, ref: ToolRef) -> str:
        kb = self.engine.get(ref.id)
        return kb.meta.name if kb else ref.id


# ==============================================================================
# 工作流
# ==============================================================================


@dataclass
class Workflow:
    """
    工作流定义。

    属性:
        id: 工作流 ID
        name: 名称
        description: 展示给模型的描述
        parameters: 开始节点的参数定义（JSON Schema）
        handler: 执行函数，接收参数字典
    """
    id: str
    name: str
    handler: Callable[[dict[str, Any]], Awaitable[Any]]
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


class WorkflowEngine(ABC):
    """工作流引擎接口。图执行的细节由引擎自己负责。"""

    @abstractmethod
    def get(self, workflow_id: str) -> Workflow | None:
        """按 ID 获取工作流定义。"""

    @abstractmethod
    def list(self) -> list[Workflow]:
        """所有工作流。"""

    @abstractmethod
    async def execute(self, workflow_id: str, arguments: dict[str, Any]) -> Any:
        """执行工作流并返回结果。"""


class InMemoryWorkflowEngine(WorkflowEngine):
    """把工作流注册为内存中的异步函数。"""

    def __init__(self, workflows: list[Workflow] | None = None):
        self._workflows: dict[str, Workflow] = {w.id: w for w in workflows or []}

    def register(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow

    def get(self, workflow_id: str) -> Workflow | None:
        return self._workflows.get(workflow_id)

    def list(self) -> list[Workflow]:
        return list(self._workflows.values())

    async def execute(self, workflow_id: str, arguments: dict[str, Any]) -> Any:
        workflow = self._workflows[workflow_id]
        return await workflow.handler(arguments)


class WorkflowBackend(ToolBackend):
    """工作流工具。每个工作流对应一个 "workflow-<ID>" 工具。"""

    kind = ToolKind.WORKFLOW

    def __init__(self, engine: WorkflowEngine):
        self.engine = engine

    async def list_tools(self, ids: list[str] | None = None) -> list[ToolDescriptor]:
        workflows = self.engine.list() if ids is None else [self.engine.get(i) for i in ids]
        return [
            ToolDescriptor(
                ref=ToolRef(ToolKind.WORKFLOW, w.id),
                description=w.description or w.name,
                parameters=w.parameters,
            )
            for w in workflows
            if w is not None
        ]

    async def execute(self, ref: ToolRef, arguments: dict[str, Any]) -> Any:
        if self.engine.get(ref.id) is None:
            raise ToolNotFound("the called workflow not found")
        logger.info(f"Running workflow {ref.id}")
        return await self.engine.execute(ref.id, arguments)

    def display_name(self, ref: ToolRef) -> str:
        workflow = self.engine.get(ref.id)
        return workflow.name if workflow else ref.id


# ==============================================================================
# 技能
# ==============================================================================

SKILL_PARAMETERS = {
    "type": "object",
    "properties": {
        "task": {"type": "string", "description": "需要借助该技能完成的任务（可选）"},
    },
}


class SkillBackend(ToolBackend):
    """
    技能工具。调用 "skill-<技能名>" 时返回该技能的完整指令（SKILL.md 正文），
    模型按指令继续使用其他工具完成任务。
    """

    kind = ToolKind.SKILL

    def __init__(self, loader: SkillsLoader):
        self.loader = loader

    async def list_tools(self, ids: list[str] | None = None) -> list[ToolDescriptor]:
        skills = self.loader.discover(only_available=True)
        if ids is not None:
            skills = [s for s in skills if s.name in ids]
        return [
            ToolDescriptor(
                ref=ToolRef(ToolKind.SKILL, s.name),
                description=s.description,
                parameters=SKILL_PARAMETERS,
            )
            for s in skills
        ]

    async def execute(self, ref: ToolRef, arguments: dict[str, Any]) -> Any:
        skill = self.loader.load(ref.id)
        if skill is None:
            raise ToolNotFound(f"Skill '{ref.id}' not found")
        missing = skill.missing_requirements()
        if missing:
            raise ToolArgumentError(f"Skill '{ref.id}' is unavailable, missing {', '.join(missing)}")
        return skill.instructions
