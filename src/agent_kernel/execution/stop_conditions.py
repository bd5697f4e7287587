"""
Stop conditions：按优先级裁决 loop 是否结束/改道。

优先级表（数字越小越优先）：
- 0 abort（取消信号 / 外部标记）
- 1 report（显式 report 工具调用）
- 2 hard budget（硬 token 预算耗尽）
- 3 max iterations（最后一轮）
- 4 loop detected（重复工具调用模式）
- 5 no tool calls（自然完成）
- >= 10 自定义条件

说明：
- 条件在固定检查点（checkpoint）评估：调用模型前、拿到响应后、一轮工具执行结束后；
- 同一检查点有多个条件命中时，取优先级最小者；结果只在评估期间短暂存在。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable, List, Optional, Protocol, Sequence

from agent_kernel.core.contracts import LLMCallResult
from agent_kernel.core.run_context import ContextMeta

CUSTOM_PRIORITY_MIN = 10


class StopPriority(IntEnum):
    """内置条件优先级。"""

    ABORT = 0
    REPORT = 1
    HARD_BUDGET = 2
    MAX_ITERATIONS = 3
    LOOP_DETECTED = 4
    NO_TOOL_CALLS = 5


class Checkpoint(str, Enum):
    """条件评估检查点。"""

    PRE_CALL = "pre_call"
    RESPONSE = "response"
    ROUND_END = "round_end"


@dataclass(frozen=True)
class StopConditionResult:
    """
    条件命中结果。

    字段：
    - reason：可读原因
    - reason_code：稳定原因码
    - priority：优先级（越小越优先）
    - answer：可选；命中时携带的最终答案（report / 自然完成）
    """

    reason: str
    reason_code: str
    priority: int
    answer: Optional[str] = None


@dataclass(frozen=True)
class StopEvaluationState:
    """
    一次评估所需的只读快照。

    字段：
    - iteration：当前迭代号（从 1 开始）
    - response：本轮模型响应（PRE_CALL 时为 None）
    - loop_detected：本轮结束时 loop detector 的结论
    - hard_token_limit：loop 级硬 token 上限（0 表示不检查）
    - meta：run 的命名空间 meta（读取 budget 耗尽标记）
    """

    checkpoint: Checkpoint
    aborted: bool
    iteration: int
    max_iterations: int
    total_tokens: int = 0
    hard_token_limit: int = 0
    response: Optional[LLMCallResult] = None
    loop_detected: bool = False
    report_tool_name: str = "report"
    meta: Optional[ContextMeta] = None


class StopCondition(Protocol):
    """停止条件协议。"""

    name: str
    priority: int
    checkpoints: frozenset

    def check(self, state: StopEvaluationState) -> Optional[StopConditionResult]:
        """命中返回结果，否则返回 None。"""


_ALL = frozenset(Checkpoint)


class AbortCondition:
    name = "abort"
    priority = int(StopPriority.ABORT)
    checkpoints = _ALL

    def check(self, state: StopEvaluationState) -> Optional[StopConditionResult]:
        if not state.aborted:
            return None
        return StopConditionResult(reason="Aborted by signal", reason_code="abort_signal", priority=self.priority)


class ReportCondition:
    """模型响应里出现 report 工具调用：`input.answer`（字符串）优先，否则用响应文本。"""

    name = "report"
    priority = int(StopPriority.REPORT)
    checkpoints = frozenset({Checkpoint.RESPONSE})

    def check(self, state: StopEvaluationState) -> Optional[StopConditionResult]:
        if state.response is None:
            return None
        for call in state.response.tool_calls:
            if call.name != state.report_tool_name:
                continue
            answer = call.input.get("answer")
            final = answer if isinstance(answer, str) else state.response.content
            return StopConditionResult(
                reason="Agent reported completion",
                reason_code="report_complete",
                priority=self.priority,
                answer=final,
            )
        return None


class HardBudgetCondition:
    """budget middleware 写入的耗尽标记，或 loop 级硬上限。"""

    name = "hard_budget"
    priority = int(StopPriority.HARD_BUDGET)
    checkpoints = frozenset({Checkpoint.PRE_CALL})

    def check(self, state: StopEvaluationState) -> Optional[StopConditionResult]:
        exhausted = bool(state.meta.get("budget", "exhausted", False)) if state.meta is not None else False
        over_limit = state.hard_token_limit > 0 and state.total_tokens >= state.hard_token_limit
        if not (exhausted or over_limit):
            return None
        reason = None
        if state.meta is not None:
            reason = state.meta.get("budget", "exhaustedReason")
        return StopConditionResult(
            reason=str(reason or "Token budget exhausted"),
            reason_code="hard_budget",
            priority=self.priority,
        )


class MaxIterationsCondition:
    name = "max_iterations"
    priority = int(StopPriority.MAX_ITERATIONS)
    checkpoints = frozenset({Checkpoint.ROUND_END})

    def check(self, state: StopEvaluationState) -> Optional[StopConditionResult]:
        if state.iteration < state.max_iterations:
            return None
        return StopConditionResult(
            reason=f"Maximum iterations reached ({state.max_iterations})",
            reason_code="max_iterations",
            priority=self.priority,
        )


class LoopDetectedCondition:
    name = "loop_detected"
    priority = int(StopPriority.LOOP_DETECTED)
    checkpoints = frozenset({Checkpoint.ROUND_END})

    def check(self, state: StopEvaluationState) -> Optional[StopConditionResult]:
        if not state.loop_detected:
            return None
        return StopConditionResult(
            reason="Agent is repeating the same tool calls",
            reason_code="loop_detected",
            priority=self.priority,
        )


class NoToolCallsCondition:
    name = "no_tool_calls"
    priority = int(StopPriority.NO_TOOL_CALLS)
    checkpoints = frozenset({Checkpoint.RESPONSE})

    def check(self, state: StopEvaluationState) -> Optional[StopConditionResult]:
        if state.response is None or state.response.tool_calls:
            return None
        return StopConditionResult(
            reason="Model produced no tool calls",
            reason_code="no_tool_calls",
            priority=self.priority,
            answer=state.response.content,
        )


@dataclass(frozen=True)
class CustomStopCondition:
    """
    自定义条件（优先级必须 >= 10）。

    字段：
    - predicate：返回 True 表示命中
    - reason / reason_code：命中时的原因
    - checkpoints：评估检查点（默认仅 RESPONSE）
    """

    name: str
    priority: int
    predicate: Callable[[StopEvaluationState], bool]
    reason: str
    reason_code: str
    checkpoints: frozenset = frozenset({Checkpoint.RESPONSE})

    def check(self, state: StopEvaluationState) -> Optional[StopConditionResult]:
        if not self.predicate(state):
            return None
        return StopConditionResult(reason=self.reason, reason_code=self.reason_code, priority=self.priority)


def builtin_conditions() -> List[StopCondition]:
    """返回内置条件（按优先级排序）。"""

    return [
        AbortCondition(),
        ReportCondition(),
        HardBudgetCondition(),
        MaxIterationsCondition(),
        LoopDetectedCondition(),
        NoToolCallsCondition(),
    ]


class StopConditionEvaluator:
    """停止条件裁决器：同一检查点命中多个条件时取优先级最小者。"""

    def __init__(self, custom: Sequence[StopCondition] = ()) -> None:
        """
        创建裁决器（内置条件总是存在）。

        参数：
        - custom：自定义条件（优先级必须 >= 10）
        """

        self._conditions: List[StopCondition] = builtin_conditions()
        for cond in custom:
            self.register(cond)

    def register(self, condition: StopCondition) -> None:
        """
        注册自定义条件。

        异常：
        - ValueError：优先级落在内置保留区间（< 10）
        """

        if int(condition.priority) < CUSTOM_PRIORITY_MIN:
            raise ValueError(
                f"custom stop condition {condition.name!r} must use priority >= {CUSTOM_PRIORITY_MIN}"
            )
        self._conditions.append(condition)

    @property
    def conditions(self) -> List[StopCondition]:
        return sorted(self._conditions, key=lambda c: int(c.priority))

    def evaluate_all(self, state: StopEvaluationState) -> List[StopConditionResult]:
        """返回本检查点所有命中的结果（按优先级升序）。"""

        hits: List[StopConditionResult] = []
        for cond in self.conditions:
            if state.checkpoint not in cond.checkpoints:
                continue
            res = cond.check(state)
            if res is not None:
                hits.append(res)
        return hits

    def evaluate(self, state: StopEvaluationState) -> Optional[StopConditionResult]:
        """返回优先级最小的命中结果；无命中返回 None。"""

        hits = self.evaluate_all(state)
        return hits[0] if hits else None


__all__ = [
    "AbortCondition",
    "CUSTOM_PRIORITY_MIN",
    "Checkpoint",
    "CustomStopCondition",
    "HardBudgetCondition",
    "LoopDetectedCondition",
    "MaxIterationsCondition",
    "NoToolCallsCondition",
    "ReportCondition",
    "StopCondition",
    "StopConditionEvaluator",
    "StopConditionResult",
    "StopEvaluationState",
    "StopPriority",
    "builtin_conditions",
]
