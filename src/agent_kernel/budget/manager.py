"""
BudgetManager：token / 迭代预算记账与升级决策。

说明：
- `snapshot()` 是只读派生状态；`decide(snapshot)` 是 snapshot 的纯函数；
- 硬上限：`hard_token_limit`（绝对值）或 `token_budget * hard_limit_ratio`，先到者生效；
- 软阈值：`token_budget * soft_limit_ratio`；
- tier 升级单调（small → medium → large），run 内不降级。
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Literal, Optional

from agent_kernel.budget.tiers import next_tier, tier_index
from agent_kernel.core.contracts import Tier

BudgetAction = Literal["continue", "escalate", "stop"]


@dataclass(frozen=True)
class BudgetSnapshot:
    """
    预算只读快照。

    字段：
    - total_tokens / iterations_used：已消耗量
    - token_budget / iteration_budget：预算（0 表示不限制）
    - hard_token_limit：绝对硬上限（0 表示不启用）
    - soft_limit_reached / hard_limit_reached：阈值标记
    - tier / start_tier：当前与起始 tier
    - iterations_since_progress / stalled：收敛停滞信号
    - escalation_enabled：是否允许升级
    - extensions：迭代预算被延长的次数
    - iteration_limit_reached：已开始的迭代数超过迭代预算
    """

    total_tokens: int
    iterations_used: int
    token_budget: int
    iteration_budget: int
    hard_token_limit: int
    soft_limit_reached: bool
    hard_limit_reached: bool
    tier: Tier
    start_tier: Tier
    iterations_since_progress: int = 0
    stalled: bool = False
    escalation_enabled: bool = True
    extensions: int = 0
    iteration_limit_reached: bool = False


@dataclass(frozen=True)
class BudgetDecision:
    """预算决策。"""

    action: BudgetAction
    reason: Optional[str] = None
    force_synthesis: bool = False
    escalate_to: Optional[Tier] = None


class BudgetManager:
    """预算记账器（每个顶层 run 一个实例，跨 tier 重建共享）。"""

    def __init__(
        self,
        *,
        token_budget: int = 0,
        hard_token_limit: int = 0,
        iteration_budget: int = 0,
        soft_limit_ratio: float = 0.8,
        hard_limit_ratio: float = 0.95,
        start_tier: Tier = "medium",
        enable_escalation: bool = True,
        stall_threshold: int = 0,
    ) -> None:
        """
        参数：
        - token_budget：token 预算（0 表示不限制）
        - hard_token_limit：绝对硬上限（0 表示不启用）
        - iteration_budget：迭代预算（可延长；0 表示不限制）
        - soft_limit_ratio / hard_limit_ratio：相对 token_budget 的阈值比例
        - start_tier：起始 tier
        - enable_escalation：是否允许推荐升级
        - stall_threshold：连续无进展迭代数达到该值视为停滞（0 表示不检测）

        异常：
        - ValueError：比例非法或 tier 未知
        """

        if not (0.0 < soft_limit_ratio <= hard_limit_ratio):
            raise ValueError("soft_limit_ratio must be > 0 and <= hard_limit_ratio")
        tier_index(start_tier)
        self.token_budget = max(0, int(token_budget))
        self.hard_token_limit = max(0, int(hard_token_limit))
        self.iteration_budget = max(0, int(iteration_budget))
        self.soft_limit_ratio = float(soft_limit_ratio)
        self.hard_limit_ratio = float(hard_limit_ratio)
        self.enable_escalation = bool(enable_escalation)
        self.stall_threshold = max(0, int(stall_threshold))
        self.start_tier: Tier = start_tier
        self._tier: Tier = start_tier
        self._lock = threading.Lock()
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._iterations = 0
        self._last_progress_iteration = 0
        self._extensions = 0

    @property
    def total_tokens(self) -> int:
        with self._lock:
            return self._prompt_tokens + self._completion_tokens

    @property
    def tier(self) -> Tier:
        return self._tier

    @property
    def extensions(self) -> int:
        return self._extensions

    def record(self, prompt_tokens: int, completion_tokens: int) -> None:
        """记录一次模型调用的 token 消耗（负数按 0 处理）。"""

        with self._lock:
            self._prompt_tokens += max(0, int(prompt_tokens))
            self._completion_tokens += max(0, int(completion_tokens))

    def record_iteration(self) -> int:
        """记录一次迭代开始，返回累计迭代数。"""

        with self._lock:
            self._iterations += 1
            return self._iterations

    def mark_progress(self) -> None:
        """标记当前迭代有进展（用于停滞检测）。"""

        with self._lock:
            self._last_progress_iteration = self._iterations

    def extend_iterations(self, extra: int) -> int:
        """
        延长迭代预算。

        返回：
        - 新的迭代预算

        异常：
        - ValueError：extra <= 0
        """

        if int(extra) <= 0:
            raise ValueError("extra iterations must be positive")
        with self._lock:
            self.iteration_budget += int(extra)
            self._extensions += 1
            return self.iteration_budget

    def escalate(self) -> Optional[Tier]:
        """把 tier 提升一档（同时重置停滞计数）；已是最高档返回 None（不变）。"""

        with self._lock:
            nxt = next_tier(self._tier)
            if nxt is not None:
                self._tier = nxt
                self._last_progress_iteration = self._iterations
            return nxt

    def snapshot(self) -> BudgetSnapshot:
        """返回当前只读快照。"""

        with self._lock:
            total = self._prompt_tokens + self._completion_tokens
            iterations = self._iterations
            since_progress = iterations - self._last_progress_iteration
            extensions = self._extensions
            tier = self._tier

        soft = self.token_budget > 0 and total >= self.token_budget * self.soft_limit_ratio
        hard = (self.hard_token_limit > 0 and total >= self.hard_token_limit) or (
            self.token_budget > 0 and total >= self.token_budget * self.hard_limit_ratio
        )
        stalled = self.stall_threshold > 0 and since_progress >= self.stall_threshold
        # iterations 在迭代开始时计数：第 budget + 1 轮开始即超限
        over_iterations = self.iteration_budget > 0 and iterations > self.iteration_budget
        return BudgetSnapshot(
            total_tokens=total,
            iterations_used=iterations,
            token_budget=self.token_budget,
            iteration_budget=self.iteration_budget,
            hard_token_limit=self.hard_token_limit,
            soft_limit_reached=soft,
            hard_limit_reached=hard,
            tier=tier,
            start_tier=self.start_tier,
            iterations_since_progress=since_progress,
            stalled=stalled,
            escalation_enabled=self.enable_escalation,
            extensions=extensions,
            iteration_limit_reached=over_iterations,
        )

    @staticmethod
    def decide(snapshot: BudgetSnapshot) -> BudgetDecision:
        """
        根据快照给出建议（纯函数）。

        规则（按顺序）：
        1) 硬上限 → stop + force_synthesis
        2) 迭代预算耗尽 → stop + force_synthesis（可用 `extend_iterations` 延长）
        3) 软阈值且仍在起始 tier、可升级 → escalate
        4) 收敛停滞且可升级 → escalate
        5) 其它 → continue
        """

        if snapshot.hard_limit_reached:
            limit = snapshot.hard_token_limit or int(snapshot.token_budget)
            return BudgetDecision(
                action="stop",
                reason=f"Token hard limit: {snapshot.total_tokens}/{limit}",
                force_synthesis=True,
            )
        if snapshot.iteration_limit_reached:
            return BudgetDecision(
                action="stop",
                reason=f"Iteration budget exhausted: {snapshot.iterations_used - 1}/{snapshot.iteration_budget}",
                force_synthesis=True,
            )

        upgrade = next_tier(snapshot.tier) if snapshot.escalation_enabled else None
        if upgrade is not None and snapshot.soft_limit_reached and snapshot.tier == snapshot.start_tier:
            return BudgetDecision(
                action="escalate",
                reason=f"Token soft limit reached at tier {snapshot.tier}",
                escalate_to=upgrade,
            )
        if upgrade is not None and snapshot.stalled:
            return BudgetDecision(
                action="escalate",
                reason=f"No progress for {snapshot.iterations_since_progress} iterations",
                escalate_to=upgrade,
            )
        return BudgetDecision(action="continue")


__all__ = ["BudgetAction", "BudgetDecision", "BudgetManager", "BudgetSnapshot"]
