"""
LinearExecutionLoop：有界 for 循环驱动的执行引擎。

每轮迭代：
1) 取消检查（priority 0）
2) before_iteration：STOP → complete（budget 耗尽时为 hard_budget，否则 middleware_stop）；ESCALATE → escalate
3) 调用前检查点：hard budget（priority 2）/ 自定义条件
4) 调用模型（失败 = 派发层失败，run 以 failure 结束）
5) 累计 token 到 `meta("loop", "totalTokens")`
6) 响应检查点：report（priority 1）优先于 no tool calls（priority 5）
7) 执行整批工具（失败 = 派发层失败）
8) 轮末检查点：最后一轮（priority 3）/ 重复模式（priority 4）→ escalate
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Sequence

from agent_kernel.core.cancellation import RunCancelled
from agent_kernel.core.contracts import ControlAction, LLMCallResult
from agent_kernel.core.errors import MiddlewareError
from agent_kernel.core.loop_context import LoopContext
from agent_kernel.execution.loop_detector import DEFAULT_LOOP_WINDOW, LoopDetector
from agent_kernel.execution.results import LoopResult, RunOutput, failure_output
from agent_kernel.execution.stop_conditions import (
    Checkpoint,
    StopCondition,
    StopConditionEvaluator,
    StopConditionResult,
    StopEvaluationState,
    StopPriority,
)

logger = logging.getLogger(__name__)

DEFAULT_REPORT_TOOL = "report"


class ExecutionLoop(Protocol):
    """执行 loop 协议（线性 loop 是默认实现）。"""

    async def run(self, ctx: LoopContext) -> LoopResult:
        ...


class LinearExecutionLoop:
    """线性执行 loop。"""

    def __init__(
        self,
        *,
        report_tool_name: str = DEFAULT_REPORT_TOOL,
        loop_window: int = DEFAULT_LOOP_WINDOW,
        hard_token_limit: int = 0,
        stop_conditions: Sequence[StopCondition] = (),
    ) -> None:
        """
        参数：
        - report_tool_name：显式完成工具名
        - loop_window：loop detector 窗口大小
        - hard_token_limit：loop 级硬 token 上限（0 表示只依赖 budget middleware 的 meta 标记）
        - stop_conditions：自定义停止条件（优先级 >= 10）
        """

        self.report_tool_name = report_tool_name
        self.loop_window = int(loop_window)
        self.hard_token_limit = int(hard_token_limit)
        self._custom = list(stop_conditions)

    async def run(self, ctx: LoopContext) -> LoopResult:
        """
        驱动 loop 直到终态。

        异常：
        - MiddlewareError：fail-closed middleware 失败（致命，由宿主转换为失败结果）
        """

        run = ctx.run
        if run.max_iterations <= 0:
            return LoopResult.complete(failure_output(f"No iterations executed (maxIterations = {run.max_iterations})"))

        evaluator = StopConditionEvaluator(self._custom)
        detector = LoopDetector(self.loop_window)
        total_tokens = int(run.meta.get("loop", "totalTokens", 0) or 0)

        for i in range(run.max_iterations):
            run.iteration = i + 1

            if run.aborted:
                return self._stop(ctx, self._abort_result())

            action = await ctx.before_iteration()
            if action is ControlAction.STOP:
                budget_hit = self._evaluate(evaluator, ctx, Checkpoint.PRE_CALL, total_tokens)
                if budget_hit is not None and budget_hit.priority == StopPriority.HARD_BUDGET:
                    return self._stop(ctx, budget_hit)
                return self._stop(
                    ctx,
                    StopConditionResult(
                        reason="Middleware requested stop",
                        reason_code="middleware_stop",
                        priority=int(StopPriority.HARD_BUDGET),
                    ),
                )
            if action is ControlAction.ESCALATE:
                reason = run.meta.get("budget", "escalateReason") or "Middleware requested escalation"
                return LoopResult.escalate(str(reason))

            pre = self._evaluate(evaluator, ctx, Checkpoint.PRE_CALL, total_tokens)
            if pre is not None:
                return self._stop(ctx, pre)

            try:
                response = await ctx.call_llm()
            except RunCancelled:
                return self._stop(ctx, self._abort_result())
            except MiddlewareError:
                raise
            except Exception as exc:
                logger.warning("LLM call failed at iteration %s", run.iteration, exc_info=True)
                return LoopResult.complete(failure_output(f"LLM call failed: {exc}"))

            if response.usage is not None:
                total_tokens += response.usage.total_tokens
                run.meta.set("loop", "totalTokens", total_tokens)

            hit = self._evaluate(evaluator, ctx, Checkpoint.RESPONSE, total_tokens, response=response)
            if hit is not None:
                return self._stop(ctx, hit)

            calls = list(response.tool_calls)
            try:
                await ctx.execute_tools(calls)
            except RunCancelled:
                return self._stop(ctx, self._abort_result())
            except MiddlewareError:
                raise
            except Exception as exc:
                logger.warning("tool execution failed at iteration %s", run.iteration, exc_info=True)
                return LoopResult.complete(failure_output(f"Tool execution failed: {exc}"))

            await ctx.after_iteration()

            looped = detector.record(calls)
            end = self._evaluate(evaluator, ctx, Checkpoint.ROUND_END, total_tokens, loop_detected=looped)
            if end is not None:
                return self._stop(ctx, end)

        # range 耗尽而未命中最后一轮检查（理论上不可达：MaxIterationsCondition 总会命中）
        return LoopResult.escalate(f"Maximum iterations reached ({run.max_iterations})")

    def _evaluate(
        self,
        evaluator: StopConditionEvaluator,
        ctx: LoopContext,
        checkpoint: Checkpoint,
        total_tokens: int,
        *,
        response: Optional[LLMCallResult] = None,
        loop_detected: bool = False,
    ) -> Optional[StopConditionResult]:
        run = ctx.run
        state = StopEvaluationState(
            checkpoint=checkpoint,
            aborted=run.aborted,
            iteration=run.iteration,
            max_iterations=run.max_iterations,
            total_tokens=total_tokens,
            hard_token_limit=self.hard_token_limit,
            response=response,
            loop_detected=loop_detected,
            report_tool_name=self.report_tool_name,
            meta=run.meta,
        )
        return evaluator.evaluate(state)

    @staticmethod
    def _abort_result() -> StopConditionResult:
        return StopConditionResult(reason="Aborted by signal", reason_code="abort_signal", priority=int(StopPriority.ABORT))

    def _stop(self, ctx: LoopContext, stop: StopConditionResult) -> LoopResult:
        """把命中的条件映射为终态结果。"""

        run = ctx.run
        priority = int(stop.priority)
        if priority in (StopPriority.MAX_ITERATIONS, StopPriority.LOOP_DETECTED):
            logger.info("loop escalating at iteration %s: %s", run.iteration, stop.reason)
            return LoopResult.escalate(stop.reason)

        metadata = {"stopPriority": priority, "iterations": run.iteration}
        answer = stop.answer or stop.reason
        if stop.reason_code == "hard_budget":
            metadata["forceSynthesis"] = bool(run.meta.get("budget", "forceSynthesis", True))
            answer = _synthesize_answer(ctx) or stop.reason

        success = priority <= StopPriority.REPORT or priority == StopPriority.NO_TOOL_CALLS
        if stop.reason_code == "abort_signal":
            success = False
        logger.info("loop complete at iteration %s: %s", run.iteration, stop.reason_code)
        return LoopResult.complete(
            RunOutput(answer=answer or "", reason_code=stop.reason_code, success=success, metadata=metadata)
        )


def _synthesize_answer(ctx: LoopContext) -> str:
    """从已有历史中取最近一条非空 assistant 文本，作为 best-effort 答案。"""

    for msg in reversed(ctx.run.messages):
        if msg.get("role") == "assistant":
            content = msg.get("content")
            if isinstance(content, str) and content.strip():
                return content
    return ""


__all__ = ["DEFAULT_REPORT_TOOL", "ExecutionLoop", "LinearExecutionLoop"]
