"""
BudgetMiddleware：token 预算执行与收敛提示。

hook：
- before_iteration：记录迭代 → 读取 BudgetManager 快照 → 按决策返回 ControlAction；
  决策与快照写入 `meta("budget", ...)`，loop 通过 meta 读取耗尽原因；
- before_llm_call：软阈值后注入一次性 system 收敛提示（补丁追加到消息末尾）；
- after_tool_exec：成功且签名（工具名 + 输入）首次出现的调用视为进展，供停滞检测使用。

约束：
- fail-closed：预算执行失败必须终止 run（不能静默超支）。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Set

from agent_kernel.budget.manager import BudgetManager
from agent_kernel.core.contracts import ControlAction, LLMCallPatch, LLMCtx, ToolExecCtx, ToolOutput
from agent_kernel.core.run_context import RunContext
from agent_kernel.core.utils import stable_json
from agent_kernel.middleware.base import FailPolicy, HookKind, Middleware

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BudgetPolicy:
    """
    预算执行策略。

    字段：
    - active：是否启用
    - hard_stop：硬上限时是否强制停止
    - force_synthesis_on_hard_limit：硬上限时要求基于已有信息合成答案（隐含停止）
    """

    active: bool = True
    hard_stop: bool = True
    force_synthesis_on_hard_limit: bool = True


class BudgetMiddleware(Middleware):
    name = "budget"
    order = 10
    fail_policy = FailPolicy.FAIL_CLOSED
    timeout_ms = 2000
    hooks = frozenset({HookKind.BEFORE_ITERATION, HookKind.BEFORE_LLM_CALL, HookKind.AFTER_TOOL_EXEC})

    def __init__(self, manager: BudgetManager, policy: Optional[BudgetPolicy] = None) -> None:
        self.manager = manager
        self.policy = policy or BudgetPolicy()
        self._nudge_sent = False
        self._seen_calls: Set[str] = set()

    @property
    def convergence_nudge_sent(self) -> bool:
        return self._nudge_sent

    def enabled(self) -> bool:
        return self.policy.active

    async def before_iteration(self, run: RunContext) -> ControlAction:
        self.manager.record_iteration()
        snap = self.manager.snapshot()
        decision = self.manager.decide(snap)
        run.meta.set("budget", "snapshot", snap)
        run.meta.set("budget", "decision", decision.action)

        if decision.action == "stop":
            run.meta.set("budget", "exhausted", True)
            run.meta.set("budget", "exhaustedReason", decision.reason)
            if self.policy.hard_stop or self.policy.force_synthesis_on_hard_limit:
                force = bool(decision.force_synthesis and self.policy.force_synthesis_on_hard_limit)
                run.meta.set("budget", "forceSynthesis", force)
                logger.info("budget exhausted: %s", decision.reason)
                return ControlAction.STOP
            return ControlAction.CONTINUE

        if decision.action == "escalate":
            run.meta.set("budget", "escalateReason", decision.reason)
            run.meta.set("budget", "escalateTo", decision.escalate_to)
            return ControlAction.ESCALATE

        return ControlAction.CONTINUE

    async def before_llm_call(self, ctx: LLMCtx) -> Optional[LLMCallPatch]:
        if self._nudge_sent:
            return None
        snap = self.manager.snapshot()
        if not snap.soft_limit_reached or snap.token_budget <= 0:
            return None
        self._nudge_sent = True
        ctx.run.meta.set("budget", "convergenceNudgeSent", True)
        pct = round(snap.total_tokens * 100 / snap.token_budget)
        nudge = {
            "role": "system",
            "content": f"Token budget checkpoint: {pct}% consumed. Start converging toward your final answer.",
        }
        return LLMCallPatch(messages=[*ctx.messages, nudge])

    async def after_tool_exec(self, ctx: ToolExecCtx, result: ToolOutput) -> None:
        if not result.success:
            return
        signature = f"{ctx.tool_name}:{stable_json(ctx.input)}"
        if signature not in self._seen_calls:
            self._seen_calls.add(signature)
            self.manager.mark_progress()

    def reset(self) -> None:
        self._nudge_sent = False
        self._seen_calls.clear()


__all__ = ["BudgetMiddleware", "BudgetPolicy"]
