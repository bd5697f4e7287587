"""
ToolExecutor：单次工具调用的完整路径。

顺序：
0) input normalizers（按注册顺序；单个失败只记录 warning 并跳过）
1) guard 输入校验（第一个 reject 即返回，工具不执行）
2) ToolManager.execute（权限检查 + 委托执行）
3) guard 输出校验（sanitize 链式改写；reject 即返回）
4) output processors（顺序串联）

说明：
- 一批调用通过 `asyncio.gather` 并发执行，返回顺序与输入一致；
- 权限/guard 拒绝都是 `ToolOutput(success=False)` 数据，不抛异常；
- ToolManager.execute 本身抛出的异常属于分发层故障，不转换为数据（loop 以 `Tool execution failed` 结束）。
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, List, Optional, Protocol, Sequence, Union

from agent_kernel.core.contracts import ToolCallInput, ToolExecCtx, ToolOutput
from agent_kernel.core.run_context import RunContext
from agent_kernel.guards.pipeline import GuardPipeline, ToolGuard
from agent_kernel.tools.manager import ToolManager
from agent_kernel.tools.output_processors import OutputProcessor, OutputProcessorPipeline
from agent_kernel.tools.protocol import ToolInput

logger = logging.getLogger(__name__)


class InputNormalizer(Protocol):
    """工具输入规整器（在 guard 之前执行；不适用时原样返回 input）。"""

    name: str

    def normalize(
        self, tool_name: str, input: ToolInput, ctx: ToolExecCtx
    ) -> Union[ToolInput, Awaitable[ToolInput]]:
        ...


class ToolExecutor:
    """工具批量执行器（实现 `ToolBatchExecutor` 协议）。"""

    def __init__(
        self,
        manager: ToolManager,
        *,
        guards: Sequence[ToolGuard] = (),
        processors: Sequence[OutputProcessor] = (),
        normalizers: Sequence[InputNormalizer] = (),
    ) -> None:
        self.manager = manager
        self.guards = GuardPipeline(guards)
        self.processors = OutputProcessorPipeline(processors)
        self.normalizers: List[InputNormalizer] = list(normalizers)

    async def execute(self, calls: Sequence[ToolCallInput], run: RunContext) -> List[ToolOutput]:
        return list(await asyncio.gather(*(self.execute_one(call, run) for call in calls)))

    async def execute_one(self, call: ToolCallInput, run: RunContext) -> ToolOutput:
        ctx = ToolExecCtx(
            run=run,
            tool_name=call.name,
            input=dict(call.input),
            iteration=run.iteration,
            request_id=run.request_id,
            abort=run.abort,
        )
        tool_input = await self._normalize(call.name, ctx)

        verdict = self.guards.validate_input(call.name, tool_input, ctx)
        if not verdict.ok:
            return ToolOutput(
                tool_call_id=call.id,
                output=f"[guard:{verdict.guard}] Input rejected: {verdict.reason}",
                success=False,
                error=verdict.reason,
            )

        # 工具自身异常已在 ToolManager 内转换为结果；这里抛出的是分发层故障，向上传播给 loop
        result = await self.manager.execute(call.name, tool_input)

        checked = self.guards.validate_output(call.name, result.output or result.error or "", ctx)
        if checked.rejected is not None:
            return ToolOutput(
                tool_call_id=call.id,
                output=f"[guard:{checked.rejected.guard}] Output rejected: {checked.rejected.reason}",
                success=False,
                error=checked.rejected.reason,
            )

        output = await self.processors.process(checked.output, ctx)
        metadata = dict(result.metadata) if result.metadata else {}
        if result.error_code:
            metadata.setdefault("error_code", result.error_code)
        return ToolOutput(
            tool_call_id=call.id,
            output=output,
            success=result.success,
            error=result.error,
            metadata=metadata or None,
        )

    async def _normalize(self, tool_name: str, ctx: ToolExecCtx) -> ToolInput:
        """依次执行 normalizer；ctx.input 同步为最新值。"""

        current: Optional[ToolInput] = ctx.input
        for normalizer in self.normalizers:
            try:
                out = normalizer.normalize(tool_name, dict(current or {}), ctx)
                if inspect.isawaitable(out):
                    out = await out
            except Exception:
                logger.warning("input normalizer %s failed for %s; skipped", normalizer.name, tool_name, exc_info=True)
                continue
            if isinstance(out, dict):
                current = out
                ctx.input = out
        return dict(current or {})


__all__ = ["InputNormalizer", "ToolExecutor"]
