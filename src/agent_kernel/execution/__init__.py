"""执行 loop 与停止条件。"""

from __future__ import annotations

from agent_kernel.execution.linear_loop import ExecutionLoop, LinearExecutionLoop
from agent_kernel.execution.loop_detector import LoopDetector, batch_signature
from agent_kernel.execution.results import LoopOutcome, LoopResult, RunOutput
from agent_kernel.execution.stop_conditions import (
    Checkpoint,
    CustomStopCondition,
    StopConditionEvaluator,
    StopConditionResult,
    StopEvaluationState,
    StopPriority,
)

__all__ = [
    "Checkpoint",
    "CustomStopCondition",
    "ExecutionLoop",
    "LinearExecutionLoop",
    "LoopDetector",
    "LoopOutcome",
    "LoopResult",
    "RunOutput",
    "StopConditionEvaluator",
    "StopConditionResult",
    "StopEvaluationState",
    "StopPriority",
    "batch_signature",
]
