"""
ParallelExecutor：资源受控的并行子 agent 执行。

能力：
- 并发上限：同时运行的子 agent 不超过 max_concurrent（asyncio.Semaphore）
- 取消树：每个子 agent 拿到父 token 派生的子 token，父取消 → 子取消
- 预算切分：父 token 预算按 equal / weighted 切给各子 agent
- 去重：dedupe_key（缺省为 task 文本）相同的在途请求共享一次执行
- 背压：等待队列超过 max_queue_size 时直接返回失败结果
- join 超时：超过 join_timeout_ms 仍未完成的请求返回 timed_out 结果，并取消其执行
- 深度上限：depth > max_depth 时整批拒绝

说明：
- 执行器只依赖注入的 `SubAgentRunner`，不依赖具体 agent 实现；
- runner 抛出的异常被转换为失败结果，不会向上传播。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from agent_kernel.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_AGENT_TYPE = "researcher"

TokenPartition = Literal["equal", "weighted"]


@dataclass(frozen=True)
class SubAgentRequest:
    """
    一次派生请求。

    字段：
    - task：任务描述
    - agent_type：注册表中的类型 id
    - max_iterations：可选；覆盖类型默认值
    - working_dir：可选；相对项目根目录
    - dedupe_key：可选；缺省使用 task
    - weight：weighted 预算切分的权重
    """

    task: str
    agent_type: str = DEFAULT_AGENT_TYPE
    max_iterations: Optional[int] = None
    working_dir: Optional[str] = None
    dedupe_key: Optional[str] = None
    weight: float = 1.0


@dataclass(frozen=True)
class SubAgentResult:
    task: str
    agent_type: str
    success: bool
    result: str = ""
    iterations: int = 0
    tokens_used: int = 0
    deduped: bool = False
    error: Optional[str] = None
    timed_out: bool = False

    @classmethod
    def failure(cls, request: SubAgentRequest, error: str, **kwargs: object) -> "SubAgentResult":
        return cls(task=request.task, agent_type=request.agent_type, success=False, error=error, **kwargs)  # type: ignore[arg-type]


SubAgentRunner = Callable[[SubAgentRequest, int, CancellationToken], Awaitable[SubAgentResult]]


class ParallelExecutorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_concurrent: int = Field(default=5, ge=1)
    max_queue_size: int = Field(default=20, ge=0)
    max_depth: int = Field(default=3, ge=0)
    join_timeout_ms: int = Field(default=120_000, ge=1)
    token_partition: TokenPartition = "equal"
    parent_token_budget: int = Field(default=0, ge=0)


class ParallelExecutor:
    """并行执行器（每个父 run 一个实例）。"""

    def __init__(
        self,
        runner: SubAgentRunner,
        parent_token: CancellationToken,
        config: Optional[ParallelExecutorConfig] = None,
    ) -> None:
        self.runner = runner
        self.parent_token = parent_token
        self.config = config or ParallelExecutorConfig()
        self._running = 0
        self._queued = 0
        self._inflight: Dict[str, "asyncio.Future[SubAgentResult]"] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop: Optional[asyncio.AbstractEventLoop] = None

    def _slots(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.config.max_concurrent)
            self._semaphore_loop = loop
        return self._semaphore

    async def execute_all(self, requests: Sequence[SubAgentRequest], depth: int = 0) -> List[SubAgentResult]:
        """
        提交一批请求并收集结果（顺序与 requests 一致）。

        返回：
        - 全部完成或 join 超时后的结果列表；超时的请求 `timed_out=True`
        """

        if depth > self.config.max_depth:
            msg = f"MaxDepth ({self.config.max_depth}) exceeded at depth {depth}"
            return [SubAgentResult.failure(r, msg) for r in requests]
        if self.parent_token.cancelled:
            return [SubAgentResult.failure(r, "Parent agent aborted") for r in requests]
        if not requests:
            return []

        budgets = self.partition_budget(requests)
        tasks = [asyncio.ensure_future(self.submit(r, b, depth)) for r, b in zip(requests, budgets)]
        timeout_ms = self.config.join_timeout_ms
        _, pending = await asyncio.wait(tasks, timeout=timeout_ms / 1000.0)
        if pending:
            logger.warning("join timeout after %sms; cancelling %s sub-agent(s)", timeout_ms, len(pending))
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        results: List[SubAgentResult] = []
        for req, task in zip(requests, tasks):
            if task in pending:
                results.append(SubAgentResult.failure(req, f"Timed out after {timeout_ms}ms", timed_out=True))
            else:
                results.append(task.result())
        return results

    async def submit(self, request: SubAgentRequest, token_budget: int = 0, depth: int = 0) -> SubAgentResult:
        """
        提交单个请求（去重 → 背压 → 并发槽位）。

        说明：
        - 与在途请求 dedupe_key 相同时，等待其结果并标记 `deduped=True`；
        - 在途数量超过 `max_concurrent + max_queue_size` 时直接返回失败结果。
        """

        if depth > self.config.max_depth:
            return SubAgentResult.failure(request, f"MaxDepth ({self.config.max_depth}) exceeded at depth {depth}")

        key = request.dedupe_key or request.task
        existing = self._inflight.get(key)
        if existing is not None:
            result = await asyncio.shield(existing)
            return replace(result, deduped=True)

        if self._running + self._queued >= self.config.max_concurrent + self.config.max_queue_size:
            return SubAgentResult.failure(
                request, f"Executor queue full (maxQueueSize: {self.config.max_queue_size})"
            )

        self._queued += 1
        shared: "asyncio.Future[SubAgentResult]" = asyncio.get_running_loop().create_future()
        self._inflight[key] = shared
        try:
            result = await self._run_slot(request, token_budget)
        except BaseException:
            shared.cancel()
            raise
        finally:
            self._inflight.pop(key, None)
        shared.set_result(result)
        return result

    async def _run_slot(self, request: SubAgentRequest, token_budget: int) -> SubAgentResult:
        slots = self._slots()
        try:
            await slots.acquire()
        finally:
            self._queued -= 1
        self._running += 1
        try:
            return await self._run_one(request, token_budget)
        finally:
            self._running -= 1
            slots.release()

    async def _run_one(self, request: SubAgentRequest, token_budget: int) -> SubAgentResult:
        if self.parent_token.cancelled:
            return SubAgentResult.failure(request, "Parent agent aborted before execution")

        child = self.parent_token.child()
        try:
            return await self.runner(request, token_budget, child)
        except asyncio.CancelledError:
            child.cancel("sub-agent cancelled")
            raise
        except Exception as exc:
            logger.warning("sub-agent runner failed for task %r", request.task, exc_info=True)
            return SubAgentResult.failure(request, str(exc) or type(exc).__name__)
        finally:
            self.parent_token.remove_listener(child.cancel)

    def partition_budget(self, requests: Sequence[SubAgentRequest]) -> List[int]:
        """按配置切分父 token 预算（0 表示不限制，全部返回 0）。"""

        total = self.config.parent_token_budget
        if total == 0 or not requests:
            return [0 for _ in requests]
        if self.config.token_partition == "equal":
            share = total // len(requests)
            return [share for _ in requests]
        weights = [max(0.0, float(r.weight)) for r in requests]
        total_weight = sum(weights)
        if total_weight <= 0:
            share = total // len(requests)
            return [share for _ in requests]
        return [int(w / total_weight * total) for w in weights]

    def stats(self) -> Dict[str, int]:
        return {"running": self._running, "queued": self._queued, "deduped": len(self._inflight)}


__all__ = [
    "DEFAULT_AGENT_TYPE",
    "ParallelExecutor",
    "ParallelExecutorConfig",
    "SubAgentRequest",
    "SubAgentResult",
    "SubAgentRunner",
    "TokenPartition",
]
