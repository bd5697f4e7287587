"""
AgentProfile：agent 的角色、预算与派生能力声明。

角色：
- orchestrator：可以分解任务并派生子 agent
- sub-agent：被派生的 agent；是否还能继续派生由 spawn.max_depth 决定
- atomic：不具备派生能力（永远不会进入 orchestrator 代码路径）
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from agent_kernel.core.contracts import Tier

AgentRole = Literal["orchestrator", "sub-agent", "atomic"]

DEFAULT_MAX_SPAWN_DEPTH = 3


class ProfileBudget(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_iterations: Optional[int] = Field(default=None, ge=0)
    tier: Optional[Tier] = None
    enable_escalation: Optional[bool] = None
    token_budget: Optional[int] = Field(default=None, ge=0)


class ProfileSpawn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_depth: int = Field(default=DEFAULT_MAX_SPAWN_DEPTH, ge=0)
    # 空列表表示不限制
    allowed_profiles: List[str] = Field(default_factory=list)


class AgentProfile(BaseModel):
    """
    agent 配置档。

    字段：
    - id：档案 id
    - role：orchestrator / sub-agent / atomic
    - system_prompt / instructions：可选提示词
    - budget：预算覆盖（未设置的字段沿用全局配置）
    - spawn：派生约束
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    role: AgentRole = "sub-agent"
    system_prompt: Optional[str] = None
    instructions: List[str] = Field(default_factory=list)
    budget: ProfileBudget = Field(default_factory=ProfileBudget)
    spawn: ProfileSpawn = Field(default_factory=ProfileSpawn)

    def remaining_depth(self, depth: int) -> int:
        """当前深度下还允许的派生层数（atomic 恒为 0）。"""

        if self.role == "atomic":
            return 0
        return max(0, int(self.spawn.max_depth) - int(depth))

    def child_spawn_depth(self, depth: int = 0) -> int:
        """在 depth 处派生的子 agent 还剩的派生层数（每下一层减一；atomic 为 0）。"""

        return max(0, self.remaining_depth(depth) - 1)

    def can_spawn(self, depth: int, target_profile: Optional[str] = None) -> bool:
        """
        是否允许在 depth 处派生子 agent。

        参数：
        - depth：当前 agent 的深度（顶层为 0）
        - target_profile：可选；要派生的 profile/agent 类型 id
        """

        if self.remaining_depth(depth) <= 0:
            return False
        if target_profile is not None and self.spawn.allowed_profiles:
            return target_profile in self.spawn.allowed_profiles
        return True


__all__ = ["AgentProfile", "AgentRole", "DEFAULT_MAX_SPAWN_DEPTH", "ProfileBudget", "ProfileSpawn"]
