"""Tier 顺序与单调升级辅助函数（small → medium → large，run 内不降级）。"""

from __future__ import annotations

from typing import Optional, Tuple

from agent_kernel.core.contracts import Tier

TIER_ORDER: Tuple[Tier, ...] = ("small", "medium", "large")


def tier_index(tier: str) -> int:
    """
    返回 tier 在升级顺序中的位置。

    异常：
    - ValueError：未知 tier
    """

    if tier not in TIER_ORDER:
        raise ValueError(f"unknown tier: {tier!r}")
    return TIER_ORDER.index(tier)  # type: ignore[arg-type]


def next_tier(tier: str) -> Optional[Tier]:
    """返回下一档 tier；已是最高档时返回 None。"""

    idx = tier_index(tier)
    if idx >= len(TIER_ORDER) - 1:
        return None
    return TIER_ORDER[idx + 1]


def is_max_tier(tier: str) -> bool:
    return next_tier(tier) is None


__all__ = ["TIER_ORDER", "is_max_tier", "next_tier", "tier_index"]
