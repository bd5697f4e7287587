"""
MiddlewarePipeline：按 order 编排 middleware hook，并实施失败策略。

语义：
- before-hooks 按 order 升序执行；after-hooks、`on_stop`、`on_complete` 按降序执行（洋葱模型）；
- 同 order 时保持注册顺序（升序）及其逆序（降序）；
- `before_iteration` 遇到第一个非 CONTINUE 立即短路；
- `before_llm_call` 补丁逐字段合并，后者显式字段覆盖前者，None 不覆盖；
- `before_tool_exec` 只要有一个 SKIP 即返回 SKIP；
- hook 抛错/超时：总是回调 `on_error` 并记录 warning；
  fail-closed 抛出 `MiddlewareError`，fail-open 视为返回中性值。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from agent_kernel.core.contracts import (
    ControlAction,
    LLMCallPatch,
    LLMCallResult,
    LLMCtx,
    ToolExecCtx,
    ToolExecDecision,
    ToolOutput,
)
from agent_kernel.core.errors import MiddlewareError
from agent_kernel.core.run_context import RunContext
from agent_kernel.middleware.base import FailPolicy, HookKind, Middleware

logger = logging.getLogger(__name__)

T = TypeVar("T")

MiddlewareErrorCallback = Callable[[str, str, BaseException], None]


class MiddlewarePipeline:
    """middleware 执行器（能力表驱动）。"""

    def __init__(
        self,
        middlewares: Sequence[Middleware],
        *,
        on_error: Optional[MiddlewareErrorCallback] = None,
    ) -> None:
        """
        创建 pipeline。

        参数：
        - middlewares：middleware 列表（任意顺序；内部按 order 稳定排序）
        - on_error：可选错误回调 `(middleware_name, hook_name, exc)`；无论失败策略都会调用
        """

        self._asc: List[Middleware] = sorted(middlewares, key=lambda m: int(m.order))
        self._desc: List[Middleware] = list(reversed(self._asc))
        self._on_error = on_error
        # 能力表：hook → 声明了该 hook 的 middleware（已排好序）
        self._table: Dict[HookKind, Dict[str, List[Middleware]]] = {}
        for kind in HookKind:
            self._table[kind] = {
                "asc": [m for m in self._asc if kind in m.hooks],
                "desc": [m for m in self._desc if kind in m.hooks],
            }

    @property
    def middlewares(self) -> List[Middleware]:
        """按 order 升序的 middleware 列表（拷贝）。"""

        return list(self._asc)

    def _active(self, kind: HookKind, direction: str) -> List[Middleware]:
        return [m for m in self._table[kind][direction] if m.enabled()]

    async def _run_hook(self, middleware: Middleware, kind: HookKind, call: Callable[[], Awaitable[T]], fallback: T) -> T:
        """
        执行单个 hook（含超时与失败策略）。

        异常：
        - MiddlewareError：fail-closed middleware 的 hook 抛错或超时
        """

        timeout_ms = int(middleware.timeout_ms or 0)
        try:
            if timeout_ms > 0:
                return await asyncio.wait_for(call(), timeout=timeout_ms / 1000.0)
            return await call()
        except asyncio.TimeoutError as exc:
            err: BaseException = TimeoutError(
                f"middleware {middleware.name!r}.{kind.value} timed out after {timeout_ms}ms"
            )
            err.__cause__ = exc
        except Exception as exc:
            err = exc

        self._report_error(middleware, kind, err)
        if middleware.fail_policy == FailPolicy.FAIL_CLOSED:
            raise MiddlewareError(middleware=middleware.name, hook=kind.value, cause=err) from err
        return fallback

    def _report_error(self, middleware: Middleware, kind: HookKind, err: BaseException) -> None:
        logger.warning(
            "middleware %s.%s failed (%s): %s",
            middleware.name,
            kind.value,
            middleware.fail_policy.value,
            err,
            exc_info=err,
        )
        if self._on_error is None:
            return
        try:
            self._on_error(middleware.name, kind.value, err)
        except Exception:
            logger.warning("middleware on_error callback failed", exc_info=True)

    async def on_start(self, run: RunContext) -> None:
        for m in self._active(HookKind.ON_START, "asc"):
            await self._run_hook(m, HookKind.ON_START, lambda m=m: m.on_start(run), None)

    async def on_stop(self, run: RunContext, reason: str) -> None:
        for m in self._active(HookKind.ON_STOP, "desc"):
            await self._run_hook(m, HookKind.ON_STOP, lambda m=m: m.on_stop(run, reason), None)

    async def on_complete(self, run: RunContext) -> None:
        for m in self._active(HookKind.ON_COMPLETE, "desc"):
            await self._run_hook(m, HookKind.ON_COMPLETE, lambda m=m: m.on_complete(run), None)

    async def before_iteration(self, run: RunContext) -> ControlAction:
        """升序执行；第一个非 CONTINUE 的结果立即返回。"""

        for m in self._active(HookKind.BEFORE_ITERATION, "asc"):
            action = await self._run_hook(
                m, HookKind.BEFORE_ITERATION, lambda m=m: m.before_iteration(run), ControlAction.CONTINUE
            )
            action = _coerce_action(action)
            if action is not ControlAction.CONTINUE:
                return action
        return ControlAction.CONTINUE

    async def after_iteration(self, run: RunContext) -> None:
        for m in self._active(HookKind.AFTER_ITERATION, "desc"):
            await self._run_hook(m, HookKind.AFTER_ITERATION, lambda m=m: m.after_iteration(run), None)

    async def before_llm_call(self, ctx: LLMCtx) -> LLMCallPatch:
        """
        升序执行并逐字段合并补丁。

        说明：
        - 每个补丁合并后同步写回 ctx（messages/tools），后续 middleware 看到的是已打补丁的视图。
        """

        patch = LLMCallPatch()
        for m in self._active(HookKind.BEFORE_LLM_CALL, "asc"):
            value = await self._run_hook(m, HookKind.BEFORE_LLM_CALL, lambda m=m: m.before_llm_call(ctx), None)
            if value is None:
                continue
            patch = patch.merged_with(value)
            if value.messages is not None:
                ctx.messages = list(value.messages)
            if value.tools is not None:
                ctx.tools = list(value.tools)
        return patch

    async def after_llm_call(self, ctx: LLMCtx, result: LLMCallResult) -> None:
        for m in self._active(HookKind.AFTER_LLM_CALL, "desc"):
            await self._run_hook(m, HookKind.AFTER_LLM_CALL, lambda m=m: m.after_llm_call(ctx, result), None)

    async def before_tool_exec(self, ctx: ToolExecCtx) -> ToolExecDecision:
        """任一 middleware 投票 SKIP 即返回 SKIP。"""

        for m in self._active(HookKind.BEFORE_TOOL_EXEC, "asc"):
            decision = await self._run_hook(
                m, HookKind.BEFORE_TOOL_EXEC, lambda m=m: m.before_tool_exec(ctx), ToolExecDecision.EXECUTE
            )
            if decision == ToolExecDecision.SKIP:
                return ToolExecDecision.SKIP
        return ToolExecDecision.EXECUTE

    async def after_tool_exec(self, ctx: ToolExecCtx, result: ToolOutput) -> None:
        for m in self._active(HookKind.AFTER_TOOL_EXEC, "desc"):
            await self._run_hook(m, HookKind.AFTER_TOOL_EXEC, lambda m=m: m.after_tool_exec(ctx, result), None)


def _coerce_action(value: Any) -> ControlAction:
    """把 hook 返回值规整为 ControlAction（None 视为 CONTINUE；未知值抛 ValueError）。"""

    if value is None:
        return ControlAction.CONTINUE
    if isinstance(value, ControlAction):
        return value
    return ControlAction(value)


__all__ = ["MiddlewareErrorCallback", "MiddlewarePipeline"]
