"""
Middleware 基类与 hook 能力表。

说明：
- 每个 middleware 通过 `hooks: frozenset[HookKind]` 显式声明自己实现了哪些 hook；
  pipeline 只按声明派发，不做“对象上有没有这个方法”的反射探测。
- 基类为所有 hook 提供中性默认实现，子类只需覆盖自己声明的 hook。
- 所有 hook 都是协程。
"""

from __future__ import annotations

from enum import Enum
from typing import FrozenSet, Optional

from agent_kernel.core.contracts import (
    ControlAction,
    LLMCallPatch,
    LLMCallResult,
    LLMCtx,
    ToolExecCtx,
    ToolExecDecision,
    ToolOutput,
)
from agent_kernel.core.run_context import RunContext

DEFAULT_HOOK_TIMEOUT_MS = 5000


class HookKind(str, Enum):
    """生命周期 hook 种类。"""

    ON_START = "on_start"
    BEFORE_ITERATION = "before_iteration"
    AFTER_ITERATION = "after_iteration"
    BEFORE_LLM_CALL = "before_llm_call"
    AFTER_LLM_CALL = "after_llm_call"
    BEFORE_TOOL_EXEC = "before_tool_exec"
    AFTER_TOOL_EXEC = "after_tool_exec"
    ON_STOP = "on_stop"
    ON_COMPLETE = "on_complete"


class FailPolicy(str, Enum):
    """hook 抛错/超时时的处理策略。"""

    FAIL_OPEN = "fail-open"
    FAIL_CLOSED = "fail-closed"


class Middleware:
    """
    Middleware 基类。

    类属性（子类覆盖）：
    - name：唯一名称（用于日志/错误）
    - order：全序；before-hooks 升序执行，after-hooks 降序执行
    - fail_policy：默认 fail-open
    - timeout_ms：单个 hook 的超时（0 表示不限制）
    - hooks：本 middleware 实现的 hook 集合
    """

    name: str = "middleware"
    order: int = 100
    fail_policy: FailPolicy = FailPolicy.FAIL_OPEN
    timeout_ms: int = DEFAULT_HOOK_TIMEOUT_MS
    hooks: FrozenSet[HookKind] = frozenset()

    def enabled(self) -> bool:
        """是否参与本次派发（每次派发时检查）。"""

        return True

    async def on_start(self, run: RunContext) -> None:
        return None

    async def before_iteration(self, run: RunContext) -> ControlAction:
        return ControlAction.CONTINUE

    async def after_iteration(self, run: RunContext) -> None:
        return None

    async def before_llm_call(self, ctx: LLMCtx) -> Optional[LLMCallPatch]:
        return None

    async def after_llm_call(self, ctx: LLMCtx, result: LLMCallResult) -> None:
        return None

    async def before_tool_exec(self, ctx: ToolExecCtx) -> ToolExecDecision:
        return ToolExecDecision.EXECUTE

    async def after_tool_exec(self, ctx: ToolExecCtx, result: ToolOutput) -> None:
        return None

    async def on_stop(self, run: RunContext, reason: str) -> None:
        return None

    async def on_complete(self, run: RunContext) -> None:
        return None


__all__ = ["DEFAULT_HOOK_TIMEOUT_MS", "FailPolicy", "HookKind", "Middleware"]
