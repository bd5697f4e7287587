"""
SubAgentOrchestrator：委派策略与派生生命周期。

策略：
- sequential：逐个派生；父取消或结果错误包含 "aborted" 时提前结束
- parallel：全部交给 ParallelExecutor 并发执行（含预算切分、join 超时）
- auto：当前等同 sequential（预留给模型驱动的任务分解）

说明：
- 组合显式注入的 AgentRegistry 与 ParallelExecutor；
- 深度由执行器的 max_depth 约束：orchestrator 以自身 depth 提交，子 run 的 orchestrator 为 depth + 1。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from agent_kernel.agents.parallel_executor import (
    ParallelExecutor,
    ParallelExecutorConfig,
    SubAgentRequest,
    SubAgentResult,
    SubAgentRunner,
)
from agent_kernel.agents.profile import AgentProfile
from agent_kernel.agents.registry import AgentRegistry, AgentTypeDefinition, create_default_registry
from agent_kernel.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

DelegationStrategy = Literal["auto", "sequential", "parallel"]


class OrchestratorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strategy: DelegationStrategy = "sequential"
    executor: ParallelExecutorConfig = Field(default_factory=ParallelExecutorConfig)


@dataclass(frozen=True)
class SpawnResult:
    """单个派生结果（回注给工具层；失败时 result 以 `Error: ` 开头）。"""

    success: bool
    result: str
    iterations: int = 0
    tokens_used: int = 0


class SubAgentOrchestrator:
    def __init__(
        self,
        runner: SubAgentRunner,
        parent_token: CancellationToken,
        *,
        registry: Optional[AgentRegistry] = None,
        config: Optional[OrchestratorConfig] = None,
        depth: int = 0,
        profile: Optional[AgentProfile] = None,
    ) -> None:
        """
        参数：
        - runner：实际执行子 agent 的协程函数 `(request, token_budget, token) -> SubAgentResult`
        - parent_token：父 run 的取消 token
        - registry：agent 类型注册表；缺省为新的内置预设注册表
        - config：策略与执行器配置
        - depth：当前 run 的深度（顶层为 0）
        - profile：可选；父 agent 的 profile，用于校验派生深度与 allowed_profiles
        """

        self.config = config or OrchestratorConfig()
        self.registry = registry if registry is not None else create_default_registry()
        self.depth = int(depth)
        self.profile = profile
        self.parent_token = parent_token
        self.executor = ParallelExecutor(self._guarded(runner), parent_token, self.config.executor)

    def _guarded(self, runner: SubAgentRunner) -> SubAgentRunner:
        """在调用 runner 前校验 agent 类型存在且父 profile 允许派生该类型。"""

        async def _run(request: SubAgentRequest, token_budget: int, token: CancellationToken) -> SubAgentResult:
            if not self.registry.has(request.agent_type):
                return SubAgentResult.failure(
                    request,
                    f"Unknown agent type '{request.agent_type}'. Available: {', '.join(self.registry.list_ids())}",
                )
            if self.profile is not None and not self.profile.can_spawn(self.depth, request.agent_type):
                return SubAgentResult.failure(
                    request,
                    f"Profile '{self.profile.id}' is not allowed to spawn '{request.agent_type}' at depth {self.depth}",
                )
            return await runner(request, token_budget, token)

        return _run

    async def spawn_one(self, request: SubAgentRequest) -> SpawnResult:
        """以当前深度派生单个子 agent 并等待其完成。"""

        result = await self.executor.submit(request, 0, self.depth)
        return SpawnResult(
            success=result.success,
            result=f"Error: {result.error}" if result.error else result.result,
            iterations=result.iterations,
            tokens_used=result.tokens_used,
        )

    async def spawn_many(
        self,
        requests: Sequence[SubAgentRequest],
        strategy: Optional[DelegationStrategy] = None,
    ) -> List[SubAgentResult]:
        """按策略派生一批子 agent，返回时所有子 agent 均已结束（或被提前终止）。"""

        strat = strategy or self.config.strategy
        if strat == "parallel":
            return await self.executor.execute_all(requests, self.depth)

        results: List[SubAgentResult] = []
        for req in requests:
            result = await self.executor.submit(req, 0, self.depth)
            results.append(result)
            if self.parent_token.cancelled or (result.error and "aborted" in result.error):
                logger.info("sequential delegation stopped early after %s of %s", len(results), len(requests))
                break
        return results

    def resolve_agent_type(self, agent_type: str) -> Optional[AgentTypeDefinition]:
        return self.registry.get(agent_type)

    def stats(self) -> Dict[str, int]:
        return self.executor.stats()


__all__ = ["DelegationStrategy", "OrchestratorConfig", "SpawnResult", "SubAgentOrchestrator"]
