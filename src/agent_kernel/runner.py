"""
AgentRunner：宿主层入口（组装一次 run 并负责 tier 升级）。

职责：
1) 每个 tier 组装一次：ToolManager（注册 pack + initialize）→ ToolExecutor → middleware pipeline → RunContext → loop；
2) loop 返回 escalate 时在下一档 tier 重建 run（small → medium → large），最高档仍要求升级则以失败结束；
3) handoff 不受支持，转换为失败结果；
4) 为 orchestrator 提供子 run 构造（depth + 1，取消 token 链接到父 run）；
5) 永不抛出异常：内部异常经 `classify_run_exception` 归类后写入 `TaskResult.error_kind`。

说明：
- BudgetManager 在一次 `run()` 内跨 tier 共享（token 消耗与 tier 单调升级）；
- `request_stop()` 触发取消 token；`inject_user_context()` 排队一条 user 消息，在下一轮迭代开头写入历史。
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from agent_kernel.agents.orchestrator import SubAgentOrchestrator
from agent_kernel.agents.parallel_executor import SubAgentRequest, SubAgentResult
from agent_kernel.agents.profile import AgentProfile, ProfileBudget, ProfileSpawn
from agent_kernel.agents.registry import AgentRegistry, AgentTypeDefinition, create_default_registry
from agent_kernel.agents.spawn_tool import build_spawn_tool_pack
from agent_kernel.budget.manager import BudgetManager
from agent_kernel.budget.tiers import next_tier
from agent_kernel.config.loader import KernelConfig, load_config_dicts
from agent_kernel.core.cancellation import CancellationToken
from agent_kernel.core.contracts import ControlAction, LLMUsage, Message, Tier
from agent_kernel.core.errors import UserError
from agent_kernel.core.loop_context import LoopContextImpl
from agent_kernel.core.run_context import RunContext, create_run_context
from agent_kernel.core.run_errors import classify_run_exception
from agent_kernel.events.emitter import EventEmitter
from agent_kernel.events.model import AgentEvent, EventType
from agent_kernel.execution.linear_loop import LinearExecutionLoop
from agent_kernel.execution.results import LoopOutcome, LoopResult
from agent_kernel.execution.stop_conditions import StopCondition
from agent_kernel.guards.pipeline import ToolGuard
from agent_kernel.llm.protocol import ChatModel, ChatModelProvider
from agent_kernel.middleware.base import FailPolicy, HookKind, Middleware
from agent_kernel.middleware.builtin.budget import BudgetMiddleware, BudgetPolicy
from agent_kernel.middleware.builtin.context_filter import ContextFilterMiddleware
from agent_kernel.middleware.builtin.observability import ObservabilityMiddleware
from agent_kernel.middleware.pipeline import MiddlewarePipeline
from agent_kernel.tools.executor import InputNormalizer, ToolExecutor
from agent_kernel.tools.manager import AuditHook, ToolManager
from agent_kernel.tools.output_processors import OutputProcessor, TruncationProcessor
from agent_kernel.tools.protocol import ToolPack

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are an autonomous agent. Use the available tools to complete the task. "
    "When you are done, call the `report` tool with your final answer, or reply without tool calls."
)


@dataclass(frozen=True)
class TaskResult:
    """
    一次顶层 run 的最终结果（run 总以该对象结束，不以异常结束）。

    字段：
    - success / summary：是否成功与最终答案
    - error / error_kind：失败原因与稳定错误分类（仅内部异常时有 error_kind）
    - reason_code：loop 的终止原因码（escalate 失败时为 `escalate`）
    - iterations：跨 tier 累计迭代数
    - tokens_used：跨 tier 累计 token
    - tier：结束时所在 tier
    - files_read / files_modified / files_created：成功工具调用触及的文件
    """

    success: bool
    summary: str
    error: Optional[str] = None
    error_kind: Optional[str] = None
    reason_code: Optional[str] = None
    iterations: int = 0
    tokens_used: int = 0
    tier: Optional[Tier] = None
    files_read: List[str] = field(default_factory=list)
    files_modified: List[str] = field(default_factory=list)
    files_created: List[str] = field(default_factory=list)
    session_id: Optional[str] = None


class _InjectedContextMiddleware(Middleware):
    """在每轮迭代开头把排队的 user 消息写入历史。"""

    name = "injected-context"
    order = 5
    fail_policy = FailPolicy.FAIL_OPEN
    hooks = frozenset({HookKind.BEFORE_ITERATION})

    def __init__(self, runner: "AgentRunner") -> None:
        self._runner = runner

    async def before_iteration(self, run: RunContext) -> ControlAction:
        for message in self._runner._drain_injected():
            run.append_message(message)
        return ControlAction.CONTINUE


class AgentRunner:
    """一次性 agent 运行器（每个 runner 实例对应一个 agent；可多次调用 `run`）。"""

    def __init__(
        self,
        *,
        models: ChatModelProvider,
        config: Optional[KernelConfig] = None,
        tool_packs: Sequence[ToolPack] = (),
        guards: Sequence[ToolGuard] = (),
        processors: Optional[Sequence[OutputProcessor]] = None,
        normalizers: Sequence[InputNormalizer] = (),
        middlewares: Sequence[Middleware] = (),
        stop_conditions: Sequence[StopCondition] = (),
        emitter: Optional[EventEmitter] = None,
        registry: Optional[AgentRegistry] = None,
        profile: Optional[AgentProfile] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        on_audit: Optional[AuditHook] = None,
        agent_id: Optional[str] = None,
        parent_agent_id: Optional[str] = None,
        parent_token: Optional[CancellationToken] = None,
        session_id: Optional[str] = None,
        depth: int = 0,
        feature_flags: Optional[Mapping[str, bool]] = None,
    ) -> None:
        """
        参数：
        - models：按 tier 提供模型
        - config：内核配置；缺省为内置默认配置
        - tool_packs：每次 run 注册的工具包
        - guards / processors / normalizers：工具执行路径；processors 缺省为按配置截断
        - middlewares：额外 middleware（与内置 observability/budget/context-filter 一起排序）
        - stop_conditions：自定义停止条件（优先级 >= 10）
        - emitter：事件出口（缺省为只有进程内 notifier 的 emitter）
        - registry：子 agent 类型注册表（缺省为新的内置预设注册表）
        - profile：可选 agent profile；可派生时自动注册 spawn 工具包
        - parent_token：父 run 的取消 token（子 run 使用）
        - depth：委派深度（顶层为 0）
        - feature_flags：可选；agent 类型开关，写入 `meta("agent", "featureFlags")` 供自定义 middleware 读取
        """

        self.models = models
        self.config = config or load_config_dicts([])
        self.tool_packs: List[ToolPack] = list(tool_packs)
        self.guards: List[ToolGuard] = list(guards)
        self.processors: List[OutputProcessor] = (
            list(processors)
            if processors is not None
            else [TruncationProcessor(self.config.tools.truncation_max_chars)]
        )
        self.normalizers: List[InputNormalizer] = list(normalizers)
        self.middlewares: List[Middleware] = list(middlewares)
        self.stop_conditions: List[StopCondition] = list(stop_conditions)
        self.emitter = emitter or EventEmitter()
        self.registry = registry if registry is not None else create_default_registry()
        self.profile = profile
        self.system_prompt = system_prompt
        self.on_audit = on_audit
        self.agent_id = agent_id or uuid.uuid4().hex
        self.parent_agent_id = parent_agent_id
        self.session_id = session_id
        self.depth = int(depth)
        self.feature_flags: Dict[str, bool] = dict(feature_flags or {})
        self._token = parent_token.child() if parent_token is not None else CancellationToken()
        self._lock = threading.Lock()
        self._pending_injections: List[Message] = []
        self._delivered_injections: List[Message] = []
        self._orchestrator_instance: Optional[SubAgentOrchestrator] = None
        self._request_id = uuid.uuid4().hex

    # ---------------------------------------------------------------- host controls

    @property
    def token(self) -> CancellationToken:
        return self._token

    def request_stop(self, reason: str = "stop requested") -> None:
        """请求停止当前 run（级联取消所有子 run）。"""

        self._token.cancel(reason)

    def inject_user_context(self, content: str) -> None:
        """排队一条 user 消息；在下一轮迭代开头写入历史（tier 升级后仍保留）。"""

        with self._lock:
            self._pending_injections.append({"role": "user", "content": str(content)})

    def _drain_injected(self) -> List[Message]:
        with self._lock:
            drained = list(self._pending_injections)
            self._pending_injections.clear()
            self._delivered_injections.extend(drained)
        return drained

    # ---------------------------------------------------------------- run

    def _effective_run_settings(self) -> Tuple[int, Tier, bool, int]:
        """合并 config.run / config.budget 与 profile.budget 的覆盖值。"""

        run_cfg = self.config.run
        budget = self.profile.budget if self.profile is not None else ProfileBudget()
        max_iterations = budget.max_iterations if budget.max_iterations is not None else run_cfg.max_iterations
        tier: Tier = budget.tier or run_cfg.tier
        escalation = budget.enable_escalation if budget.enable_escalation is not None else run_cfg.enable_escalation
        token_budget = budget.token_budget if budget.token_budget is not None else self.config.budget.token_budget
        return int(max_iterations), tier, bool(escalation), int(token_budget)

    def _system_message(self) -> Message:
        parts = [self.system_prompt]
        if self.profile is not None:
            if self.profile.system_prompt:
                parts = [self.profile.system_prompt]
            parts.extend(self.profile.instructions)
        return {"role": "system", "content": "\n\n".join(p for p in parts if p)}

    async def run(self, task: str) -> TaskResult:
        """
        执行任务直到终态。

        返回：
        - TaskResult（永不抛出普通异常；仅 asyncio 取消会向上传播）
        """

        self._request_id = uuid.uuid4().hex
        max_iterations, tier, escalation, token_budget = self._effective_run_settings()
        budget_cfg = self.config.budget
        files: Dict[str, List[str]] = {"read": [], "modified": [], "created": []}
        iterations = 0
        budget: Optional[BudgetManager] = None

        try:
            budget = BudgetManager(
                token_budget=token_budget,
                hard_token_limit=budget_cfg.hard_token_limit,
                iteration_budget=budget_cfg.iteration_budget,
                soft_limit_ratio=budget_cfg.soft_limit_ratio,
                hard_limit_ratio=budget_cfg.hard_limit_ratio,
                start_tier=tier,
                enable_escalation=escalation,
                stall_threshold=budget_cfg.stall_threshold,
            )
            while True:
                result, run = await self._run_tier(task, tier, max_iterations, budget)
                iterations += run.iteration
                _merge_files(files, run)

                if result.outcome is LoopOutcome.COMPLETE and result.result is not None:
                    output = result.result
                    return self._task_result(
                        success=output.success,
                        summary=output.answer,
                        error=output.error or (None if output.success else output.answer),
                        reason_code=output.reason_code,
                        iterations=iterations,
                        budget=budget,
                        tier=tier,
                        files=files,
                    )
                if result.outcome is LoopOutcome.HANDOFF:
                    return self._task_result(
                        success=False,
                        summary="",
                        error=f"handoff not supported (target: {result.to_agent})",
                        reason_code="handoff",
                        iterations=iterations,
                        budget=budget,
                        tier=tier,
                        files=files,
                    )

                reason = result.reason or "escalation requested"
                upgrade = next_tier(tier) if escalation else None
                if upgrade is None:
                    return self._task_result(
                        success=False,
                        summary="",
                        error=f"Escalation requested at tier {tier} but no higher tier is available: {reason}",
                        reason_code="escalate",
                        iterations=iterations,
                        budget=budget,
                        tier=tier,
                        files=files,
                    )
                logger.info("escalating run %s: %s -> %s (%s)", self._request_id, tier, upgrade, reason)
                self._emit(EventType.ESCALATE, {"from_tier": tier, "to_tier": upgrade, "reason": reason})
                if budget.tier == tier:
                    budget.escalate()
                tier = upgrade
        except Exception as exc:
            err = classify_run_exception(exc)
            logger.warning("run %s failed: %s", self._request_id, err.message, exc_info=True)
            return self._task_result(
                success=False,
                summary="",
                error=err.message,
                error_kind=err.error_kind.value,
                reason_code="error",
                iterations=iterations,
                budget=budget,
                tier=tier,
                files=files,
            )

    async def _run_tier(
        self, task: str, tier: Tier, max_iterations: int, budget: BudgetManager
    ) -> Tuple[LoopResult, RunContext]:
        """在指定 tier 组装并执行一次 run。"""

        model = self._model_for(tier)
        manager = ToolManager(on_audit=self.on_audit)
        for pack in self.tool_packs:
            manager.register(pack)
        if self.profile is not None and self.profile.can_spawn(self.depth):
            manager.register(build_spawn_tool_pack(self._orchestrator()))
        await manager.initialize_all()
        try:
            executor = ToolExecutor(
                manager, guards=self.guards, processors=self.processors, normalizers=self.normalizers
            )
            pipeline = MiddlewarePipeline(self._middlewares_for(budget), on_error=_log_middleware_error)
            run = create_run_context(
                task=task,
                tier=tier,
                max_iterations=max_iterations,
                tools=manager.get_definitions(),
                abort=self._token,
                request_id=self._request_id,
                agent_id=self.agent_id,
                parent_agent_id=self.parent_agent_id,
                session_id=self.session_id,
                initial_messages=[
                    self._system_message(),
                    {"role": "user", "content": task},
                    *self._delivered_snapshot(),
                ],
            )
            if self.feature_flags:
                run.meta.set("agent", "featureFlags", dict(self.feature_flags))

            def _record(usage: LLMUsage) -> None:
                budget.record(usage.prompt_tokens, usage.completion_tokens)

            loop_ctx = LoopContextImpl(
                run,
                llm=model,
                pipeline=pipeline,
                tool_executor=executor,
                on_tokens=_record,
                temperature=self.config.run.temperature,
            )
            loop = LinearExecutionLoop(
                report_tool_name=self.config.run.report_tool_name,
                loop_window=self.config.run.loop_window,
                hard_token_limit=self.config.budget.hard_token_limit,
                stop_conditions=self.stop_conditions,
            )

            await pipeline.on_start(run)
            result: Optional[LoopResult] = None
            try:
                result = await loop.run(loop_ctx)
            finally:
                await pipeline.on_stop(run, _stop_reason(result))
            if result.outcome is LoopOutcome.COMPLETE and result.result is not None and result.result.success:
                await pipeline.on_complete(run)
            return result, run
        finally:
            await manager.dispose_all()

    def _model_for(self, tier: Tier) -> ChatModel:
        model = self.models.for_tier(tier)
        if model is None:
            raise UserError(f"no chat model configured for tier {tier!r}", code="MODEL_NOT_CONFIGURED")
        return model

    def _middlewares_for(self, budget: BudgetManager) -> List[Middleware]:
        cfg = self.config
        policy = BudgetPolicy(
            hard_stop=cfg.budget.hard_stop,
            force_synthesis_on_hard_limit=cfg.budget.force_synthesis_on_hard_limit,
        )
        middlewares: List[Middleware] = [
            ObservabilityMiddleware(self.emitter),
            _InjectedContextMiddleware(self),
            BudgetMiddleware(budget, policy),
        ]
        if cfg.middleware.context_filter.enabled:
            middlewares.append(
                ContextFilterMiddleware(
                    sliding_window_size=cfg.middleware.context_filter.sliding_window_size,
                    max_output_length=cfg.middleware.context_filter.max_output_length,
                )
            )
        for m in middlewares:
            if m.timeout_ms == Middleware.timeout_ms:
                m.timeout_ms = cfg.middleware.default_timeout_ms
        middlewares.extend(self.middlewares)
        return middlewares

    def _delivered_snapshot(self) -> List[Message]:
        with self._lock:
            return list(self._delivered_injections)

    def _task_result(
        self,
        *,
        success: bool,
        summary: str,
        iterations: int,
        budget: Optional[BudgetManager],
        tier: Tier,
        files: Dict[str, List[str]],
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
        reason_code: Optional[str] = None,
    ) -> TaskResult:
        return TaskResult(
            success=success,
            summary=summary,
            error=error,
            error_kind=error_kind,
            reason_code=reason_code,
            iterations=iterations,
            tokens_used=budget.total_tokens if budget is not None else 0,
            tier=tier,
            files_read=list(files["read"]),
            files_modified=list(files["modified"]),
            files_created=list(files["created"]),
            session_id=self.session_id,
        )

    def _emit(self, event_type: str, payload: Dict[str, object]) -> None:
        self.emitter.emit(
            AgentEvent(
                type=event_type,
                run_id=self._request_id,
                agent_id=self.agent_id,
                parent_agent_id=self.parent_agent_id,
                session_id=self.session_id,
                payload=dict(payload),
            )
        )

    # ---------------------------------------------------------------- delegation

    def _orchestrator(self) -> SubAgentOrchestrator:
        if self._orchestrator_instance is None:
            self._orchestrator_instance = SubAgentOrchestrator(
                self.spawn_child,
                self._token,
                registry=self.registry,
                config=self.config.orchestrator,
                depth=self.depth,
                profile=self.profile,
            )
        return self._orchestrator_instance

    async def spawn_child(
        self, request: SubAgentRequest, token_budget: int, token: CancellationToken
    ) -> SubAgentResult:
        """
        以 `request.agent_type` 预设构造并执行子 run（`SubAgentRunner` 实现）。

        说明：
        - 子 run 的 depth 为当前 depth + 1，取消 token 由执行器从父 token 派生；
        - 子 run 只拿到预设允许的工具包；只读预设只保留只读工具；
        - token_budget > 0 时覆盖子 run 的 token 预算；
        - 子 run 的派生层数取预设 max_depth 与父 profile 剩余层数减一中的较小值；
        - `tierEscalation` 开关关闭时子 run 不升级 tier（父 run 禁用升级时同样禁用）。
        """

        definition = self.registry.get_or_raise(request.agent_type)
        flags = self.registry.resolve_feature_flags(definition.id)
        child_depth = self.depth + 1
        _, _, parent_escalation, _ = self._effective_run_settings()
        run_cfg = self.config.run.model_copy(
            update={
                "max_iterations": request.max_iterations or definition.max_iterations,
                "enable_escalation": parent_escalation and bool(flags.get("tierEscalation", False)),
            }
        )
        budget_cfg = self.config.budget
        if token_budget > 0:
            budget_cfg = budget_cfg.model_copy(update={"token_budget": int(token_budget)})
        config = self.config.model_copy(update={"run": run_cfg, "budget": budget_cfg})

        # 子 agent 的派生层数不超过父 profile 剩余层数减一
        remaining = definition.max_depth
        if self.profile is not None:
            remaining = min(remaining, self.profile.child_spawn_depth(self.depth))
        profile = AgentProfile(
            id=definition.id,
            role="sub-agent" if remaining > 0 else "atomic",
            spawn=ProfileSpawn(max_depth=child_depth + remaining),
        )
        system_prompt = self.system_prompt
        if definition.system_prompt_suffix:
            system_prompt = f"{system_prompt}\n\n{definition.system_prompt_suffix}"

        child = AgentRunner(
            models=self.models,
            config=config,
            tool_packs=self._child_packs(definition),
            guards=self.guards,
            processors=self.processors,
            normalizers=self.normalizers,
            stop_conditions=self.stop_conditions,
            emitter=self.emitter,
            registry=self.registry,
            profile=profile,
            system_prompt=system_prompt,
            on_audit=self.on_audit,
            parent_agent_id=self.agent_id,
            parent_token=token,
            session_id=self.session_id,
            depth=child_depth,
            feature_flags=flags,
        )
        self._emit(
            EventType.SPAWN,
            {
                "child_agent_id": child.agent_id,
                "agent_type": definition.id,
                "task": request.task,
                "depth": child_depth,
                "spawn_depth": remaining,
            },
        )
        result = await child.run(request.task)
        return SubAgentResult(
            task=request.task,
            agent_type=definition.id,
            success=result.success,
            result=result.summary,
            iterations=result.iterations,
            tokens_used=result.tokens_used,
            error=result.error,
        )

    def _child_packs(self, definition: AgentTypeDefinition) -> List[ToolPack]:
        packs = [p for p in self.tool_packs if not definition.tool_packs or p.id in definition.tool_packs]
        if not definition.read_only:
            return packs
        return [replace(p, tools=[t for t in p.tools if t.read_only]) for p in packs]


def _stop_reason(result: Optional[LoopResult]) -> str:
    if result is None:
        return "error"
    if result.outcome is LoopOutcome.COMPLETE and result.result is not None:
        return result.result.reason_code
    return result.outcome.value


def _merge_files(files: Dict[str, List[str]], run: RunContext) -> None:
    for key in ("read", "modified", "created"):
        for path in run.meta.get("files", key) or []:
            if path not in files[key]:
                files[key].append(path)


def _log_middleware_error(middleware: str, hook: str, exc: BaseException) -> None:
    logger.warning("middleware %s.%s reported error: %s", middleware, hook, exc)


__all__ = ["AgentRunner", "DEFAULT_SYSTEM_PROMPT", "TaskResult"]
