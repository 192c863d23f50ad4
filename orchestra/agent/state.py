"""
Agent 运行状态 - 一次 chat() 调用期间的迭代计数、计划步骤与运行标志。

每次新的 chat() 开始时重置，stop() 时也会重置。
"""

import re
from dataclasses import dataclass, field
from typing import Any

# 匹配 "1. xxx" / "1、xxx" / "1) xxx" / "- xxx" / "* xxx" / "• xxx" 形式的计划步骤
_STEP_RE = re.compile(r"^\s*(?:\d+\s*[.、)）]|[-*•])\s*(?P<text>\S.*)$")

FAILURE_KEYWORDS = ("失败", "错误", "fail", "error")


@dataclass
class PlanStep:
    """
    计划中的一个步骤。

    属性:
        id: 步骤序号（从 1 开始）
        description: 步骤描述
        completed: 是否已执行过
        success: 评估结果（None 表示尚未评估）
        output: 执行阶段的模型输出
        observation: 评估阶段的模型输出
    """
    id: int
    description: str
    completed: bool = False
    success: bool | None = None
    output: str = ""
    observation: str = ""


def parse_plan_steps(text: str) -> list[str]:
    """从计划文本中提取编号或列表项形式的步骤描述。"""
    steps = []
    for line in text.splitlines():
        match = _STEP_RE.match(line)
        if match:
            steps.append(match.group("text").strip())
    return steps


def evaluation_succeeded(evaluation: str) -> bool:
    """评估文本中不含失败/错误关键字即视为成功。"""
    lowered = evaluation.lower()
    return not any(k in lowered for k in FAILURE_KEYWORDS)


@dataclass
class AgentRunState:
    """
    一次运行的可变状态。

    属性:
        iteration: 已完成的迭代（ReAct 轮次 / 计划步骤）数
        plan: 计划步骤列表（ReAct 模式下为空）
        current: 当前步骤下标
        running: 运行标志，在每次迭代边界处检查
        context: 步骤执行上下文（step_<id>_result → 输出与评估）
    """
    iteration: int = 0
    plan: list[PlanStep] = field(default_factory=list)
    current: int = 0
    running: bool = False
    context: dict[str, Any] = field(default_factory=dict)

    def reset(self) -> None:
        self.iteration = 0
        self.plan = []
        self.current = 0
        self.running = False
        self.context = {}

    def set_plan(self, descriptions: list[str]) -> None:
        self.plan = [PlanStep(id=i + 1, description=d) for i, d in enumerate(descriptions)]
        self.current = 0

    @property
    def current_step(self) -> PlanStep | None:
        return self.plan[self.current] if self.current < len(self.plan) else None

    @property
    def plan_completed(self) -> bool:
        return bool(self.plan) and all(s.completed for s in self.plan)

    def update_step(self, step: PlanStep, output: str, observation: str) -> None:
        step.completed = True
        step.success = evaluation_succeeded(observation)
        step.output = output
        step.observation = observation
        self.context[f"step_{step.id}_result"] = {"output": output, "evaluation": observation}

    def advance(self) -> bool:
        """移动到下一步，没有下一步时返回 False。"""
        if self.current + 1 >= len(self.plan):
            return False
        self.current += 1
        return True

    def context_info(self) -> str:
        """执行进度摘要，附在总结和诊断提示词后面。"""
        if not self.plan:
            return f"已执行迭代数：{self.iteration}"
        lines = [f"计划共 {len(self.plan)} 步，已执行 {sum(s.completed for s in self.plan)} 步："]
        for s in self.plan:
            if not s.completed:
                status = "未执行"
            else:
                status = "成功" if s.success else "失败"
            lines.append(f"{s.id}. [{status}] {s.description}")
        return "\n".join(lines)
