"""
Plan-Execute 模式：先让模型制定计划，再逐步执行、评估、总结。

状态流转：
    PLAN（不带工具）→ EXECUTE_STEP（带工具，观察工具调用）→ EVALUATE_STEP（不带工具）
    → UPDATE_STATUS（评估中不含失败/错误关键字即为成功）→ ADVANCE
    → 没有下一步或达到步骤上限时进入 SUMMARIZE → DONE

任何阶段抛出的异常都会先写入一条 assistant:error 记录，
再发起一次诊断轮次（原因、状态、恢复建议、预防措施），最后重新抛出。
"""

from loguru import logger

from orchestra.agent.loop import AgentLoop, AgentReply
from orchestra.agent.state import PlanStep, parse_plan_steps
from orchestra.history.message import TYPE_ERROR, Message
from orchestra.utils.helpers import truncate_string

PLAN_PROMPT = """基于用户输入"{input}"，请制定一个详细的执行计划。
计划应包含：
1. 总体目标描述
2. 具体执行步骤
3. 每个步骤的预期输出
4. 步骤之间的依赖关系
请把具体执行步骤写成编号列表（如 "1. ..."），每行一个步骤。"""

EXECUTE_PROMPT = "执行当前步骤：{step}"

EVALUATE_PROMPT = """评估步骤执行结果：
1. 检查输出是否符合预期
2. 验证执行质量
3. 更新执行状态
{output}"""

CAP_SUMMARY = "已达到最大步骤数限制。请基于已完成的步骤生成总结报告。"
DONE_SUMMARY = "所有计划步骤已完成。请生成完整的执行总结报告。"

SUMMARY_PROMPT = """{summary}
{context}

请提供：
1. 总体执行情况
2. 关键成果总结
3. 遇到的主要问题
4. 后续建议"""

DIAGNOSTIC_PROMPT = """执行过程中遇到错误：{error}
{context}

请提供：
1. 错误原因分析
2. 当前执行状态
3. 恢复建议
4. 预防措施"""


class PlanExecuteLoop(AgentLoop):
    """计划-执行模式。max_iterations 在此模式下是最大步骤数。"""

    mode = "plan"

    async def chat(self, message: str) -> AgentReply:
        self._begin()
        logger.info(f"Agent {self.profile.id} (plan) processing: {truncate_string(message, 80)}")
        try:
            # PLAN
            self._push_user(PLAN_PROMPT.format(input=message))
            plan = await self.model.stream()
            self.state.set_plan(parse_plan_steps(plan.content) or [message])
            logger.info(f"Plan has {len(self.state.plan)} steps")

            tools = await self._tool_schema()
            while (
                self.state.running
                and not self.state.plan_completed
                and self.state.iteration < self.max_iterations
            ):
                step = self.state.current_step
                if step is None:
                    break
                await self._run_step(step, tools)
                if not self.state.advance():
                    break
                self.state.iteration += 1

            if not self.state.running:
                return self._reply(self.state.iteration)

            summary = CAP_SUMMARY if self.state.iteration >= self.max_iterations else DONE_SUMMARY
            self._push_user(SUMMARY_PROMPT.format(summary=summary, context=self.state.context_info()))
            await self.model.stream()
            return self._reply(self.state.iteration)

        except Exception as e:
            logger.error(f"Plan execution error: {e}")
            await self._diagnose(e)
            raise
        finally:
            self.state.running = False

    async def _run_step(self, step: PlanStep, tools: list[dict]) -> None:
        """EXECUTE_STEP → EVALUATE_STEP → UPDATE_STATUS。"""
        logger.info(f"Executing step {step.id}: {truncate_string(step.description, 80)}")
        self._push_user(EXECUTE_PROMPT.format(step=step.description))

        result = await self.model.stream(tools)
        turns = 1
        while result.has_tool_calls and turns < self.max_iterations and self.state.running:
            await self._observe(result)
            result = await self.model.stream(tools)
            turns += 1
        if result.has_tool_calls:
            await self._observe(result)

        self._push_user(EVALUATE_PROMPT.format(output=result.content))
        evaluation = await self.model.stream()
        self.state.update_step(step, result.content, evaluation.content)
        logger.info(f"Step {step.id} {'succeeded' if step.success else 'failed'}")

    async def _diagnose(self, error: Exception) -> None:
        """写入错误记录，再请求模型给出诊断。诊断轮次本身失败只记录日志。"""
        last = self.history.get_last_message()
        if last is None or not last.is_error:
            self.history.push([Message(role="assistant", content=f"执行出错: {error}", type=TYPE_ERROR)])

        self._push_user(DIAGNOSTIC_PROMPT.format(error=error, context=self.state.context_info()))
        try:
            await self.model.stream()
        except Exception as e:
            logger.error(f"Diagnostic turn failed: {e}")
