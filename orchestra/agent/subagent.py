"""
子 Agent 模块 - 让一个 Agent 把任务委托给另一个已配置的 Agent。

模型调用 "agent-<Agent ID>" 工具时：
1. 按 ID 找到目标 Agent 的配置（agents.profiles）
2. 为它创建一个全新的、不落盘的对话历史（不共享调用方的上下文）
3. 按目标 Agent 的模式（react / plan）运行一次 chat(task)
4. 把子 Agent 的最终回复作为工具结果返回给调用方

同一个子 Agent 正在运行时再次调用（包括 A → B → A 这样的间接递归）会被拒绝。
调用方停止时（router.cancel），所有仍在运行的子 Agent 会一并停止。
"""

from typing import TYPE_CHECKING, Any

from loguru import logger

from orchestra.agent.tools.backends import ToolBackend
from orchestra.agent.tools.ref import ToolDescriptor, ToolKind, ToolRef
from orchestra.errors import ToolArgumentError, ToolError, ToolNotFound
from orchestra.history.manager import HistoryManager
from orchestra.history.store import MemoryStore

if TYPE_CHECKING:
    from orchestra.agent.context import AgentContext
    from orchestra.agent.loop import AgentLoop

SUBAGENT_PARAMETERS = {
    "type": "object",
    "properties": {
        "task": {"type": "string", "description": "交给该 Agent 完成的任务描述"},
    },
    "required": ["task"],
}


class SubAgentBackend(ToolBackend):
    """
    子 Agent 工具后端。

    属性:
        context: 运行上下文（用于查找 Agent 配置和创建循环）
        _active: 正在运行的子 Agent（ID → 循环实例）
    """

    kind = ToolKind.AGENT

    def __init__(self, context: "AgentContext"):
        self.context = context
        self._active: dict[str, "AgentLoop"] = {}

    def _profiles(self) -> dict:
        return self.context.config.agents.profiles

    async def list_tools(self, ids: list[str] | None = None) -> list[ToolDescriptor]:
        profiles = self._profiles()
        agent_ids = list(profiles) if ids is None else [i for i in ids if i in profiles]
        descriptors = []
        for agent_id in agent_ids:
            profile = profiles[agent_id]
            descriptors.append(ToolDescriptor(
                ref=ToolRef(ToolKind.AGENT, agent_id),
                description=profile.description or f"调用 Agent「{profile.name or agent_id}」完成任务",
                parameters=SUBAGENT_PARAMETERS,
            ))
        return descriptors

    async def execute(self, ref: ToolRef, arguments: dict[str, Any]) -> Any:
        if ref.id not in self._profiles():
            raise ToolNotFound(f"Agent '{ref.id}' not found")
        task = arguments.get("task")
        if not isinstance(task, str) or not task.strip():
            raise ToolArgumentError("the task can't be empty")
        if ref.id in self._active:
            raise ToolError(f"Agent '{ref.id}' is already running")

        # 延迟导入，避免循环依赖
        from orchestra.agent.loop import create_loop

        profile = self.context.config.resolve_profile(ref.id)
        history = HistoryManager.create(
            system=profile.system_prompt,
            bot=profile.id,
            store=MemoryStore(),
            max_history=profile.max_history or 0,
        )
        loop = create_loop(self.context, profile, history)

        self._active[ref.id] = loop
        logger.info(f"Sub-agent {ref.id} started: {task[:80]}")
        try:
            reply = await loop.chat(task)
        finally:
            self._active.pop(ref.id, None)
        logger.info(f"Sub-agent {ref.id} finished after {reply.iterations} iterations")
        return reply.content

    async def cancel(self) -> None:
        """停止所有仍在运行的子 Agent，等它们的流式请求收尾后返回。"""
        for agent_id, loop in list(self._active.items()):
            # 子 Agent 的 stop() 会再次经过 router.cancel()，已停止的循环直接跳过
            if not loop.state.running:
                continue
            logger.info(f"Stopping sub-agent {agent_id}")
            await loop.stop()

    def display_name(self, ref: ToolRef) -> str:
        profile = self._profiles().get(ref.id)
        return (profile.name or ref.id) if profile else ref.id
