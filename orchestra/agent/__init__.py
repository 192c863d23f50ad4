"""
Agent 核心模块：orchestra 的"大脑"。

本包包含 Agent 运行所需的全部核心组件：
- AgentContext: 运行上下文，持有配置、存储、知识库、工具路由器和模型工厂
- ReActLoop / PlanExecuteLoop: 两种 Agent 循环（create_loop 按配置的 mode 选择）
- SkillsLoader: 技能加载器，从技能目录读取 SKILL.md
"""

from orchestra.agent.context import AgentContext
from orchestra.agent.loop import AgentLoop, AgentReply, ReActLoop, create_loop
from orchestra.agent.plan import PlanExecuteLoop
from orchestra.agent.skills import SkillsLoader

__all__ = [
    "AgentContext",
    "AgentLoop",
    "AgentReply",
    "PlanExecuteLoop",
    "ReActLoop",
    "SkillsLoader",
    "create_loop",
]
