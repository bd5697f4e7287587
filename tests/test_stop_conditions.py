from __future__ import annotations

import pytest

from agent_kernel.core.contracts import LLMCallResult, ToolCallInput
from agent_kernel.core.run_context import ContextMeta
from agent_kernel.execution.loop_detector import LoopDetector, batch_signature
from agent_kernel.execution.stop_conditions import (
    Checkpoint,
    CustomStopCondition,
    StopConditionEvaluator,
    StopEvaluationState,
)


def _state(checkpoint: Checkpoint, **kwargs) -> StopEvaluationState:
    base = dict(checkpoint=checkpoint, aborted=False, iteration=1, max_iterations=10)
    base.update(kwargs)
    return StopEvaluationState(**base)


def test_lowest_priority_wins_when_several_fire() -> None:
    evaluator = StopConditionEvaluator()
    state = _state(Checkpoint.ROUND_END, iteration=10, loop_detected=True, aborted=True)
    hits = evaluator.evaluate_all(state)
    assert [h.reason_code for h in hits] == ["abort_signal", "max_iterations", "loop_detected"]
    assert evaluator.evaluate(state).reason_code == "abort_signal"


def test_report_beats_no_tool_calls_check() -> None:
    response = LLMCallResult(content="text", tool_calls=(ToolCallInput(id="r", name="finish", input={"answer": 42}),))
    hit = StopConditionEvaluator().evaluate(_state(Checkpoint.RESPONSE, response=response, report_tool_name="finish"))
    assert hit is not None
    assert hit.reason_code == "report_complete"
    # answer 非字符串时回退到响应文本
    assert hit.answer == "text"


def test_no_tool_calls_carries_content_as_answer() -> None:
    hit = StopConditionEvaluator().evaluate(_state(Checkpoint.RESPONSE, response=LLMCallResult(content="bye")))
    assert hit is not None
    assert hit.reason_code == "no_tool_calls"
    assert hit.answer == "bye"


def test_conditions_only_fire_at_their_checkpoints() -> None:
    evaluator = StopConditionEvaluator()
    assert evaluator.evaluate(_state(Checkpoint.PRE_CALL, iteration=10)) is None
    assert evaluator.evaluate(_state(Checkpoint.RESPONSE, loop_detected=True, response=LLMCallResult(
        content="", tool_calls=(ToolCallInput(id="a", name="x"),)
    ))) is None


def test_hard_budget_from_meta_or_limit() -> None:
    meta = ContextMeta()
    meta.set("budget", "exhausted", True)
    meta.set("budget", "exhaustedReason", "Token hard limit: 5/4")
    hit = StopConditionEvaluator().evaluate(_state(Checkpoint.PRE_CALL, meta=meta))
    assert hit is not None and hit.reason == "Token hard limit: 5/4"

    hit = StopConditionEvaluator().evaluate(_state(Checkpoint.PRE_CALL, total_tokens=100, hard_token_limit=100))
    assert hit is not None and hit.reason_code == "hard_budget"


def test_custom_conditions_require_priority_ten_or_more() -> None:
    low = CustomStopCondition(name="low", priority=3, predicate=lambda s: True, reason="r", reason_code="low")
    with pytest.raises(ValueError):
        StopConditionEvaluator([low])

    ok = CustomStopCondition(name="ok", priority=12, predicate=lambda s: True, reason="r", reason_code="ok")
    evaluator = StopConditionEvaluator([ok])
    hit = evaluator.evaluate(_state(Checkpoint.RESPONSE, response=LLMCallResult(content="x")))
    # no_tool_calls（5）优先于自定义条件
    assert hit is not None and hit.reason_code == "no_tool_calls"


def test_loop_detector_compares_window_halves() -> None:
    a = [ToolCallInput(id="1", name="read", input={"path": "a"})]
    b = [ToolCallInput(id="2", name="read", input={"path": "b"})]
    detector = LoopDetector(4)
    assert detector.record(a) is False
    assert detector.record(b) is False
    assert detector.record(a) is False
    # a,b,a,b：后一半与前一半相同
    assert detector.record(b) is True

    detector.reset()
    assert detector.record(a) is False


def test_loop_detector_signature_ignores_call_ids_and_key_order() -> None:
    one = [ToolCallInput(id="x", name="t", input={"a": 1, "b": 2})]
    two = [ToolCallInput(id="y", name="t", input={"b": 2, "a": 1})]
    assert batch_signature(one) == batch_signature(two)


def test_loop_detector_rejects_odd_window() -> None:
    with pytest.raises(ValueError):
        LoopDetector(5)
