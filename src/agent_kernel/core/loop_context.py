"""
LoopContext：execution loop 使用的原语集合（协议 + 默认实现）。

说明：
- loop 只依赖 `LoopContext` 协议；模型调用、middleware 编排、工具执行都封装在实现里；
- 模型调用与工具执行是 run 唯一的挂起点，二者都在取消信号下等待（`run_cancellable`）。
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Protocol, Sequence

from agent_kernel.core.cancellation import run_cancellable
from agent_kernel.core.contracts import (
    ControlAction,
    LLMCallResult,
    LLMCtx,
    LLMUsage,
    Message,
    ToolCallInput,
    ToolExecCtx,
    ToolExecDecision,
    ToolOutput,
)
from agent_kernel.core.run_context import RunContext
from agent_kernel.llm.protocol import ChatModel, ChatRequest
from agent_kernel.middleware.pipeline import MiddlewarePipeline

SKIPPED_OUTPUT = "[skipped by middleware]"

TokenCallback = Callable[[LLMUsage], None]


class ToolBatchExecutor(Protocol):
    """执行一批工具调用（guard + 工具 + output processors）。"""

    async def execute(self, calls: Sequence[ToolCallInput], run: RunContext) -> List[ToolOutput]:
        ...


class LoopContext(Protocol):
    """execution loop 所需的原语。"""

    @property
    def run(self) -> RunContext:
        ...

    def append_message(self, message: Message) -> None:
        ...

    async def before_iteration(self) -> ControlAction:
        ...

    async def after_iteration(self) -> None:
        ...

    async def call_llm(self) -> LLMCallResult:
        ...

    async def execute_tools(self, calls: Sequence[ToolCallInput]) -> List[ToolOutput]:
        ...


class LoopContextImpl:
    """`LoopContext` 默认实现。"""

    def __init__(
        self,
        run: RunContext,
        *,
        llm: ChatModel,
        pipeline: MiddlewarePipeline,
        tool_executor: ToolBatchExecutor,
        on_tokens: Optional[TokenCallback] = None,
        temperature: Optional[float] = None,
    ) -> None:
        """
        参数：
        - run：本次 run 的上下文
        - llm：当前 tier 的模型
        - pipeline：middleware pipeline
        - tool_executor：工具批量执行器
        - on_tokens：每次模型调用后的 token 用量回调（例如 BudgetManager.record）
        - temperature：默认 temperature（可被 before_llm_call 补丁覆盖）
        """

        self._run = run
        self._llm = llm
        self._pipeline = pipeline
        self._tool_executor = tool_executor
        self._on_tokens = on_tokens
        self._temperature = temperature

    @property
    def run(self) -> RunContext:
        return self._run

    def append_message(self, message: Message) -> None:
        self._run.append_message(message)

    async def before_iteration(self) -> ControlAction:
        return await self._pipeline.before_iteration(self._run)

    async def after_iteration(self) -> None:
        await self._pipeline.after_iteration(self._run)

    async def call_llm(self) -> LLMCallResult:
        """
        执行一次模型调用。

        步骤：
        1) 复制历史，构造 LLMCtx，合并 before_llm_call 补丁；
        2) 在取消信号下调用模型；
        3) 回调 token 用量；追加 assistant 消息；
        4) after_llm_call（降序）。

        异常：
        - RunCancelled：等待期间取消
        - 模型自身的异常原样抛出（由 loop 视为派发层失败）
        """

        run = self._run
        ctx = LLMCtx(
            run=run,
            messages=[dict(m) for m in run.messages],
            tools=list(run.tools),
            tier=run.tier,
            iteration=run.iteration,
        )
        patch = await self._pipeline.before_llm_call(ctx)
        if patch.messages is not None:
            ctx.messages = list(patch.messages)
        if patch.tools is not None:
            ctx.tools = list(patch.tools)
        temperature = patch.temperature if patch.temperature is not None else self._temperature

        request = ChatRequest(
            messages=ctx.messages,
            tools=ctx.tools,
            tier=run.tier,
            temperature=temperature,
            run_id=run.request_id,
        )
        result = await run_cancellable(self._llm.chat_with_tools(request), run.abort)

        if result.usage is not None and self._on_tokens is not None:
            self._on_tokens(result.usage)

        assistant: Message = {"role": "assistant", "content": result.content or ""}
        if result.tool_calls:
            assistant["tool_calls"] = [c.to_message_dict() for c in result.tool_calls]
        run.append_message(assistant)

        await self._pipeline.after_llm_call(ctx, result)
        return result

    async def execute_tools(self, calls: Sequence[ToolCallInput]) -> List[ToolOutput]:
        """
        执行一批工具调用并回注 tool 消息。

        说明：
        - before_tool_exec 投票 SKIP 的调用不执行，输出固定为 `[skipped by middleware]`（success=True）；
        - after_tool_exec 对每个调用（含被跳过的）都执行；
        - 输出顺序与 calls 一致。
        """

        run = self._run
        ctxs: List[ToolExecCtx] = []
        outputs: Dict[int, ToolOutput] = {}
        pending: List[int] = []
        for idx, call in enumerate(calls):
            ctx = ToolExecCtx(
                run=run,
                tool_name=call.name,
                input=dict(call.input),
                iteration=run.iteration,
                request_id=run.request_id,
                abort=run.abort,
            )
            ctxs.append(ctx)
            decision = await self._pipeline.before_tool_exec(ctx)
            if decision == ToolExecDecision.SKIP:
                outputs[idx] = ToolOutput(tool_call_id=call.id, output=SKIPPED_OUTPUT, success=True)
            else:
                pending.append(idx)

        if pending:
            executed = await run_cancellable(
                self._tool_executor.execute([calls[i] for i in pending], run),
                run.abort,
            )
            for idx, out in zip(pending, executed):
                outputs[idx] = out

        ordered: List[ToolOutput] = []
        for idx, call in enumerate(calls):
            out = outputs[idx]
            await self._pipeline.after_tool_exec(ctxs[idx], out)
            run.append_message(
                {"role": "tool", "tool_call_id": call.id, "name": call.name, "content": out.output}
            )
            ordered.append(out)
        return ordered


__all__ = ["LoopContext", "LoopContextImpl", "SKIPPED_OUTPUT", "ToolBatchExecutor", "TokenCallback"]
