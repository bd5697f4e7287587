from __future__ import annotations

import asyncio

import pytest

from agent_kernel.budget.manager import BudgetManager
from agent_kernel.budget.tiers import is_max_tier, next_tier, tier_index
from agent_kernel.core.contracts import ControlAction, LLMCtx, ToolExecCtx, ToolOutput
from agent_kernel.core.run_context import RunContext, create_run_context
from agent_kernel.middleware.builtin.budget import BudgetMiddleware, BudgetPolicy


def _run() -> RunContext:
    return create_run_context(task="t", tier="small", max_iterations=10, initial_messages=[{"role": "user", "content": "t"}])


def test_tier_order_is_monotonic() -> None:
    assert next_tier("small") == "medium"
    assert next_tier("medium") == "large"
    assert next_tier("large") is None
    assert is_max_tier("large")
    assert tier_index("small") < tier_index("large")
    with pytest.raises(ValueError):
        tier_index("huge")


def test_hard_token_limit_stops_with_force_synthesis() -> None:
    # 600 + 500 的一次调用后，下一次检查必须看到硬上限
    mgr = BudgetManager(hard_token_limit=1000)
    mgr.record(600, 500)
    snap = mgr.snapshot()
    assert snap.hard_limit_reached is True
    decision = mgr.decide(snap)
    assert decision.action == "stop"
    assert decision.force_synthesis is True
    assert decision.reason == "Token hard limit: 1100/1000"


def test_soft_limit_escalates_only_from_start_tier() -> None:
    mgr = BudgetManager(token_budget=1000, start_tier="small")
    mgr.record(850, 0)
    decision = mgr.decide(mgr.snapshot())
    assert decision.action == "escalate"
    assert decision.escalate_to == "medium"

    assert mgr.escalate() == "medium"
    assert mgr.decide(mgr.snapshot()).action == "continue"


def test_ratio_based_hard_limit() -> None:
    mgr = BudgetManager(token_budget=1000, soft_limit_ratio=0.5, hard_limit_ratio=0.9)
    mgr.record(900, 0)
    assert mgr.decide(mgr.snapshot()).action == "stop"


def test_escalation_disabled_never_escalates() -> None:
    mgr = BudgetManager(token_budget=100, enable_escalation=False, stall_threshold=1)
    mgr.record(90, 0)
    mgr.record_iteration()
    assert mgr.decide(mgr.snapshot()).action == "continue"


def test_escalate_at_max_tier_is_noop() -> None:
    mgr = BudgetManager(start_tier="large")
    assert mgr.escalate() is None
    assert mgr.tier == "large"


def test_stall_detection_and_progress_reset() -> None:
    mgr = BudgetManager(stall_threshold=2, start_tier="small")
    mgr.record_iteration()
    mgr.record_iteration()
    snap = mgr.snapshot()
    assert snap.stalled is True
    assert mgr.decide(snap).action == "escalate"

    mgr.mark_progress()
    assert mgr.snapshot().stalled is False


def test_iteration_budget_extension_is_counted() -> None:
    mgr = BudgetManager(iteration_budget=5)
    assert mgr.extend_iterations(3) == 8
    assert mgr.snapshot().extensions == 1
    with pytest.raises(ValueError):
        mgr.extend_iterations(0)


def test_iteration_budget_stops_after_last_allowed_iteration() -> None:
    mgr = BudgetManager(iteration_budget=2)
    mgr.record_iteration()
    mgr.record_iteration()
    assert mgr.decide(mgr.snapshot()).action == "continue"

    mgr.record_iteration()
    snap = mgr.snapshot()
    assert snap.iteration_limit_reached is True
    decision = mgr.decide(snap)
    assert decision.action == "stop"
    assert decision.force_synthesis is True
    assert decision.reason == "Iteration budget exhausted: 2/2"

    # 延长预算后恢复
    mgr.extend_iterations(1)
    assert mgr.decide(mgr.snapshot()).action == "continue"


def test_zero_iteration_budget_is_unlimited() -> None:
    mgr = BudgetManager()
    for _ in range(50):
        mgr.record_iteration()
    assert mgr.snapshot().iteration_limit_reached is False


def test_invalid_ratios_rejected() -> None:
    with pytest.raises(ValueError):
        BudgetManager(soft_limit_ratio=0.9, hard_limit_ratio=0.5)


def test_middleware_stops_and_marks_meta_on_hard_limit() -> None:
    mgr = BudgetManager(hard_token_limit=1000)
    mgr.record(600, 500)
    mw = BudgetMiddleware(mgr)
    run = _run()

    assert asyncio.run(mw.before_iteration(run)) is ControlAction.STOP
    assert run.meta.get("budget", "exhausted") is True
    assert run.meta.get("budget", "forceSynthesis") is True
    assert mgr.snapshot().iterations_used == 1


def test_middleware_without_hard_stop_continues() -> None:
    mgr = BudgetManager(hard_token_limit=10)
    mgr.record(20, 0)
    mw = BudgetMiddleware(mgr, BudgetPolicy(hard_stop=False, force_synthesis_on_hard_limit=False))
    run = _run()
    assert asyncio.run(mw.before_iteration(run)) is ControlAction.CONTINUE
    assert run.meta.get("budget", "exhausted") is True


def test_middleware_escalates_and_records_reason() -> None:
    mgr = BudgetManager(token_budget=100, start_tier="small")
    mgr.record(85, 0)
    run = _run()
    assert asyncio.run(BudgetMiddleware(mgr).before_iteration(run)) is ControlAction.ESCALATE
    assert run.meta.get("budget", "escalateTo") == "medium"
    assert "soft limit" in run.meta.get("budget", "escalateReason")


def test_convergence_nudge_sent_once_after_soft_limit() -> None:
    mgr = BudgetManager(token_budget=100, enable_escalation=False)
    mw = BudgetMiddleware(mgr)
    run = _run()
    ctx = LLMCtx(run=run, messages=list(run.messages), tools=[], tier="small", iteration=1)

    assert asyncio.run(mw.before_llm_call(ctx)) is None
    mgr.record(80, 0)
    patch = asyncio.run(mw.before_llm_call(ctx))
    assert patch is not None and patch.messages is not None
    assert patch.messages[-1]["role"] == "system"
    assert "80% consumed" in patch.messages[-1]["content"]
    assert mw.convergence_nudge_sent is True
    assert asyncio.run(mw.before_llm_call(ctx)) is None


def test_new_successful_tool_calls_count_as_progress() -> None:
    mgr = BudgetManager(stall_threshold=2)
    mw = BudgetMiddleware(mgr)
    run = _run()
    ctx = ToolExecCtx(run=run, tool_name="fs_read", input={"path": "a"}, iteration=1, request_id="r", abort=run.abort)
    ok = ToolOutput(tool_call_id="c", output="x", success=True)

    mgr.record_iteration()
    mgr.record_iteration()
    asyncio.run(mw.after_tool_exec(ctx, ok))
    assert mgr.snapshot().iterations_since_progress == 0

    # 同一签名重复调用不算进展
    mgr.record_iteration()
    mgr.record_iteration()
    asyncio.run(mw.after_tool_exec(ctx, ok))
    assert mgr.snapshot().stalled is True

    # 失败调用不算进展
    failed_ctx = ToolExecCtx(run=run, tool_name="fs_read", input={"path": "b"}, iteration=1, request_id="r", abort=run.abort)
    asyncio.run(mw.after_tool_exec(failed_ctx, ToolOutput(tool_call_id="c", output="", success=False)))
    assert mgr.snapshot().stalled is True
