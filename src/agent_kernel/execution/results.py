"""
Loop 终态结果（显式和类型）。

- COMPLETE：携带 `RunOutput{answer, reason_code, success, metadata, error}`
- ESCALATE：携带原因；宿主在更高 tier 重建 run
- HANDOFF：转交给具名 agent（线性 loop 不产生，供高级 loop 变体使用）
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class LoopOutcome(str, Enum):
    COMPLETE = "complete"
    ESCALATE = "escalate"
    HANDOFF = "handoff"


@dataclass(frozen=True)
class RunOutput:
    """
    complete 结果的载荷。

    字段：
    - answer：最终答案/摘要
    - reason_code：稳定原因码（abort_signal / report_complete / no_tool_calls / hard_budget / error ...）
    - success：是否成功
    - metadata：附加信息（至少包含 `stopPriority`）
    - error：失败时的错误字符串
    """

    answer: str
    reason_code: str
    success: bool
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass(frozen=True)
class LoopResult:
    """loop 的唯一返回值。"""

    outcome: LoopOutcome
    result: Optional[RunOutput] = None
    reason: Optional[str] = None
    to_agent: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

    @classmethod
    def complete(cls, output: RunOutput) -> "LoopResult":
        return cls(outcome=LoopOutcome.COMPLETE, result=output, reason=output.reason_code)

    @classmethod
    def escalate(cls, reason: str) -> "LoopResult":
        return cls(outcome=LoopOutcome.ESCALATE, reason=reason)

    @classmethod
    def handoff(cls, to_agent: str, context: Optional[Dict[str, Any]] = None) -> "LoopResult":
        return cls(outcome=LoopOutcome.HANDOFF, to_agent=to_agent, context=dict(context or {}))


def failure_output(message: str) -> RunOutput:
    """派发层失败（模型调用/工具执行层）或配置错误的 complete 载荷。"""

    return RunOutput(
        answer=message,
        reason_code="error",
        success=False,
        metadata={"stopPriority": -1},
        error=message,
    )


__all__ = ["LoopOutcome", "LoopResult", "RunOutput", "failure_output"]
