"""
Agent 主循环模块：驱动 History、流式模型与工具路由器协同工作的状态机。

一次 chat() 的基本流程：
  用户消息写入历史 → 组装工具 schema → 流式请求模型（实时更新最后一条消息）
  → 逐个执行工具调用并把结果写回历史 → 重复直到模型不再调用工具

两种互斥的模式（由 Agent 配置的 mode 决定）：
- ReActLoop（"react"）：THINK_ACT ⇄ OBSERVE，迭代次数受 max_iterations 限制
- PlanExecuteLoop（"plan"，见 agent/plan.py）：先制定计划，再逐步执行、评估、总结

【迭代上限】
ReAct 达到上限时模型仍在调用工具，则追加一条提示并发起一次
不带任何工具的总结轮次，然后结束。这是受控的终止，不抛出异常。
"""

from dataclasses import dataclass
from typing import Callable

from loguru import logger

from orchestra.agent.context import AgentContext
from orchestra.agent.state import AgentRunState
from orchestra.agent.tools.router import selection_from_profile
from orchestra.config.schema import AgentProfile
from orchestra.errors import ConfigurationError
from orchestra.history.manager import HistoryManager
from orchestra.history.message import TYPE_TOOL_RESULT, Message
from orchestra.providers.base import StreamEvent, TurnResult
from orchestra.utils.helpers import truncate_string

FORCED_SUMMARY_PROMPT = "已达到最大迭代次数。基于当前信息，请生成最终总结回应。"


@dataclass
class AgentReply:
    """
    一次 chat() 的最终结果。

    属性:
        content: 最后一条助手消息的正文
        reasoning: 最后一条助手消息的推理内容
        iterations: 实际执行的迭代数
        history: 本次对话的历史管理器
    """
    content: str
    reasoning: str
    iterations: int
    history: HistoryManager


class AgentLoop:
    """
    Agent 循环基类。

    持有一个对话历史和绑定到该历史的流式模型；
    模型在构造时创建，缺少凭证时同步抛出 ConfigurationError。

    属性:
        context: 运行上下文（配置、存储、工具路由器、知识库、模型工厂）
        profile: 补全后的 Agent 配置
        history: 对话历史
        model: 流式模型适配器
        state: 当前运行状态
    """

    mode = ""

    def __init__(self, context: AgentContext, profile: AgentProfile, history: HistoryManager | None = None):
        self.context = context
        self.profile = profile
        self.history = history or context.create_history(profile)
        self.model = context.create_model(profile, self.history)
        self.state = AgentRunState()
        self.max_iterations = profile.max_iterations or 1

    def subscribe(self, callback: Callable[[StreamEvent], None]) -> Callable[[], None]:
        """订阅底层模型的流事件，返回取消订阅函数。"""
        return self.model.subscribe(callback)

    async def chat(self, message: str) -> AgentReply:
        raise NotImplementedError

    async def stop(self) -> None:
        """
        停止当前运行。

        清除运行标志（在迭代边界处生效），取消进行中的流式请求与后端长任务，并重置运行状态。
        重复调用没有副作用。
        """
        if self.state.running:
            logger.info(f"Agent {self.profile.id} stopping")
        self.state.running = False
        await self.model.stop()
        await self.context.router.cancel()
        self.state.reset()

    # ===== 供子类使用的步骤 =====

    def _begin(self) -> None:
        self.state.reset()
        self.state.running = True

    def _push_user(self, content: str) -> None:
        self.history.push([Message(role="user", content=content)])

    async def _tool_schema(self) -> list[dict]:
        return await self.context.router.assemble_schema(selection_from_profile(self.profile))

    async def _observe(self, result: TurnResult) -> None:
        """按顺序执行本轮的所有工具调用，每个结果作为一条 tool 消息写回历史。"""
        for call in result.tool_calls:
            tool_result = await self.context.router.dispatch(call)
            self.history.push([Message(
                role="tool",
                content=tool_result.content,
                tool_call_id=call.id,
                type=TYPE_TOOL_RESULT,
            )])

    def _reply(self, iterations: int) -> AgentReply:
        last = self.history.get_last_message()
        content = last.content if last else ""
        reasoning = last.reasoning if last else ""
        logger.info(f"Agent {self.profile.id} replied after {iterations} iterations: {truncate_string(content, 120)}")
        return AgentReply(content=content, reasoning=reasoning, iterations=iterations, history=self.history)


class ReActLoop(AgentLoop):
    """ReAct 模式：思考/行动 → 观察 → … → 完成。"""

    mode = "react"

    async def chat(self, message: str) -> AgentReply:
        """
        处理一条用户消息。

        参数:
            message: 用户输入

        返回:
            AgentReply（内容取自最后一条助手消息）

        异常:
            TransportError / ParseError: 模型请求失败（已作为错误记录写入历史）
        """
        self._begin()
        logger.info(f"Agent {self.profile.id} (react) processing: {truncate_string(message, 80)}")
        self._push_user(message)
        tools = await self._tool_schema()

        pending = False
        try:
            while self.state.running and self.state.iteration < self.max_iterations:
                self.state.iteration += 1
                result = await self.model.stream(tools)
                pending = result.has_tool_calls
                if not pending:
                    break
                await self._observe(result)

            iterations = self.state.iteration
            if pending and self.state.running:
                logger.warning(f"Agent {self.profile.id} reached {self.max_iterations} iterations, forcing summary")
                self._push_user(FORCED_SUMMARY_PROMPT)
                await self.model.stream([])
        finally:
            self.state.running = False

        return self._reply(iterations)


def create_loop(context: AgentContext, profile: AgentProfile, history: HistoryManager | None = None) -> AgentLoop:
    """
    按 Agent 配置的 mode 创建循环实例。

    异常:
        ConfigurationError: 未知模式，或模型缺少凭证
    """
    # 延迟导入，避免循环依赖
    from orchestra.agent.plan import PlanExecuteLoop

    loops: dict[str, type[AgentLoop]] = {"react": ReActLoop, "plan": PlanExecuteLoop}
    mode = profile.mode or "react"
    loop_cls = loops.get(mode)
    if loop_cls is None:
        raise ConfigurationError(f"Unknown agent mode: {mode}")
    return loop_cls(context, profile, history)
