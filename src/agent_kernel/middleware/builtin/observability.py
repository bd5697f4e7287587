"""
ObservabilityMiddleware：把生命周期 hook 转成 AgentEvent，并跟踪本次 run 触及的文件。

说明：
- 事件经由 `EventEmitter` 发布（进程内 notifier 必选，外部 bus 可选）；
- 文件跟踪只统计成功的工具调用，写入 `meta("files", "read"|"modified"|"created")`；
- fail-open：可观测性失败不得中断 run。
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Tuple

from agent_kernel.core.contracts import ControlAction, LLMCallResult, LLMCtx, ToolExecCtx, ToolExecDecision, ToolOutput
from agent_kernel.core.run_context import ContextMeta, RunContext
from agent_kernel.events.emitter import EventEmitter
from agent_kernel.events.model import AgentEvent, EventType
from agent_kernel.middleware.base import FailPolicy, HookKind, Middleware

logger = logging.getLogger(__name__)

FILE_READ_TOOLS = frozenset({"fs_read", "fs_list"})
FILE_WRITE_TOOLS = frozenset({"fs_write", "fs_patch"})
FILE_CREATE_TOOLS = frozenset({"fs_write"})

_PATH_KEYS = ("path", "file_path", "filePath")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _add_file(meta: ContextMeta, key: str, path: str) -> None:
    existing = list(meta.get("files", key) or [])
    if path not in existing:
        existing.append(path)
        meta.set("files", key, existing)


def track_files(ctx: ToolExecCtx, result: ToolOutput) -> None:
    """按工具名把成功调用的路径参数记入 `meta("files", ...)`。"""

    if not result.success:
        return
    path: Optional[str] = None
    for key in _PATH_KEYS:
        value = ctx.input.get(key)
        if isinstance(value, str) and value:
            path = value
            break
    if path is None:
        return

    meta = ctx.run.meta
    if ctx.tool_name in FILE_READ_TOOLS:
        _add_file(meta, "read", path)
    if ctx.tool_name in FILE_WRITE_TOOLS:
        if ctx.tool_name in FILE_CREATE_TOOLS and "created" in result.output.lower():
            _add_file(meta, "created", path)
        else:
            _add_file(meta, "modified", path)


class ObservabilityMiddleware(Middleware):
    name = "observability"
    order = 0
    fail_policy = FailPolicy.FAIL_OPEN
    hooks = frozenset(HookKind)

    def __init__(self, emitter: EventEmitter) -> None:
        self.emitter = emitter
        self._started_at = time.monotonic()
        self._llm_started_at = 0.0
        # 同一批次可能多次调用同名工具：按 (工具名, ctx 实例) 区分
        self._tool_started_at: Dict[Tuple[str, int], float] = {}
        self._last_iteration = 0
        self._total_tokens = 0

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    def _emit(self, run: RunContext, event_type: str, payload: Dict[str, Any], *, iteration: Optional[int] = None) -> None:
        self.emitter.emit(
            AgentEvent(
                type=event_type,
                run_id=run.request_id,
                agent_id=run.agent_id,
                parent_agent_id=run.parent_agent_id,
                session_id=run.session_id,
                iteration=iteration,
                payload=payload,
            )
        )

    async def on_start(self, run: RunContext) -> None:
        self._started_at = time.monotonic()
        self._emit(
            run,
            EventType.RUN_START,
            {"task": run.task, "tier": run.tier, "max_iterations": run.max_iterations, "tool_count": len(run.tools)},
        )

    async def before_iteration(self, run: RunContext) -> ControlAction:
        self._emit(
            run,
            EventType.ITERATION_START,
            {"max_iterations": run.max_iterations},
            iteration=run.iteration,
        )
        return ControlAction.CONTINUE

    async def after_iteration(self, run: RunContext) -> None:
        self._last_iteration = run.iteration
        self._emit(
            run,
            EventType.ITERATION_END,
            {"cumulative_tokens": self._total_tokens},
            iteration=run.iteration,
        )

    async def before_llm_call(self, ctx: LLMCtx) -> None:
        self._llm_started_at = time.monotonic()
        self._emit(
            ctx.run,
            EventType.LLM_START,
            {"tier": ctx.tier, "message_count": len(ctx.messages)},
            iteration=ctx.iteration,
        )
        return None

    async def after_llm_call(self, ctx: LLMCtx, result: LLMCallResult) -> None:
        tokens = result.usage.total_tokens if result.usage is not None else 0
        self._total_tokens += tokens
        self._emit(
            ctx.run,
            EventType.LLM_END,
            {
                "tokens_used": tokens,
                "duration_ms": _elapsed_ms(self._llm_started_at),
                "has_tool_calls": bool(result.tool_calls),
                "content": result.content,
            },
            iteration=ctx.iteration,
        )

    async def before_tool_exec(self, ctx: ToolExecCtx) -> ToolExecDecision:
        self._tool_started_at[(ctx.tool_name, id(ctx))] = time.monotonic()
        self._emit(
            ctx.run,
            EventType.TOOL_START,
            {"tool_name": ctx.tool_name, "input": dict(ctx.input)},
            iteration=ctx.iteration,
        )
        return ToolExecDecision.EXECUTE

    async def after_tool_exec(self, ctx: ToolExecCtx, result: ToolOutput) -> None:
        track_files(ctx, result)
        started = self._tool_started_at.pop((ctx.tool_name, id(ctx)), None)
        self._emit(
            ctx.run,
            EventType.TOOL_END,
            {
                "tool_name": ctx.tool_name,
                "success": result.success,
                "error": result.error,
                "duration_ms": _elapsed_ms(started) if started is not None else 0,
            },
            iteration=ctx.iteration,
        )

    async def on_stop(self, run: RunContext, reason: str) -> None:
        if reason == "abort_signal":
            self._emit(run, EventType.ABORT, {"reason": run.abort.reason or reason}, iteration=run.iteration)
        self._emit(
            run,
            EventType.RUN_END,
            {
                "reason": reason,
                "iterations": max(self._last_iteration, run.iteration),
                "tokens_used": self._total_tokens,
                "duration_ms": _elapsed_ms(self._started_at),
                "files_created": list(run.meta.get("files", "created") or []),
                "files_modified": list(run.meta.get("files", "modified") or []),
            },
        )


__all__ = ["FILE_CREATE_TOOLS", "FILE_READ_TOOLS", "FILE_WRITE_TOOLS", "ObservabilityMiddleware", "track_files"]
