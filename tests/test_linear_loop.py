from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence

from agent_kernel.budget.manager import BudgetManager
from agent_kernel.core.cancellation import CancellationToken
from agent_kernel.core.contracts import ControlAction, LLMUsage, ToolDefinition
from agent_kernel.core.loop_context import LoopContextImpl
from agent_kernel.core.run_context import RunContext, create_run_context
from agent_kernel.execution.linear_loop import LinearExecutionLoop
from agent_kernel.execution.results import LoopOutcome
from agent_kernel.execution.stop_conditions import Checkpoint, CustomStopCondition
from agent_kernel.llm.fake import ScriptedChatModel, ScriptedTurn, tool_call
from agent_kernel.middleware.base import HookKind, Middleware
from agent_kernel.middleware.builtin.budget import BudgetMiddleware
from agent_kernel.middleware.pipeline import MiddlewarePipeline
from agent_kernel.tools.executor import ToolExecutor
from agent_kernel.tools.manager import ToolManager
from agent_kernel.tools.protocol import PackedTool, ToolPack, ToolResult


def _echo_pack(calls: Optional[List[Dict[str, Any]]] = None) -> ToolPack:
    seen = calls if calls is not None else []

    def _echo(input: Dict[str, Any]) -> ToolResult:
        seen.append(dict(input))
        return ToolResult.ok(f"echo:{input.get('text', '')}")

    return ToolPack(
        id="test",
        namespace="test",
        tools=[PackedTool(definition=ToolDefinition(name="echo"), execute=_echo, read_only=True)],
    )


def _build(
    model: ScriptedChatModel,
    *,
    max_iterations: int = 10,
    middlewares: Sequence[Middleware] = (),
    abort: Optional[CancellationToken] = None,
    calls: Optional[List[Dict[str, Any]]] = None,
    manager: Optional[ToolManager] = None,
    on_tokens: Optional[Callable[[LLMUsage], None]] = None,
) -> LoopContextImpl:
    manager = manager if manager is not None else ToolManager()
    manager.register(_echo_pack(calls))
    run = create_run_context(
        task="t",
        tier="medium",
        max_iterations=max_iterations,
        tools=manager.get_definitions(),
        abort=abort,
        initial_messages=[{"role": "user", "content": "t"}],
    )
    return LoopContextImpl(
        run,
        llm=model,
        pipeline=MiddlewarePipeline(list(middlewares)),
        tool_executor=ToolExecutor(manager),
        on_tokens=on_tokens,
    )


def test_no_tool_calls_completes_with_response_text() -> None:
    model = ScriptedChatModel([ScriptedTurn(content="done")])
    result = asyncio.run(LinearExecutionLoop().run(_build(model)))

    assert result.outcome is LoopOutcome.COMPLETE
    assert result.result is not None
    assert result.result.success is True
    assert result.result.reason_code == "no_tool_calls"
    assert result.result.answer == "done"
    assert result.result.metadata["stopPriority"] == 5


def test_report_beats_loop_detection_and_other_tools() -> None:
    # 同一响应既有 report 又有其它工具调用：report 胜出，其它工具不执行
    calls: List[Dict[str, Any]] = []
    model = ScriptedChatModel(
        [
            ScriptedTurn(tool_calls=[tool_call("echo", "c1", text="a")]),
            ScriptedTurn(tool_calls=[tool_call("echo", "c2", text="a")]),
            ScriptedTurn(
                content="fallback",
                tool_calls=[tool_call("echo", "c3", text="a"), tool_call("report", "r1", answer="final")],
            ),
        ]
    )
    ctx = _build(model, calls=calls)
    result = asyncio.run(LinearExecutionLoop(loop_window=4).run(ctx))

    assert result.outcome is LoopOutcome.COMPLETE
    assert result.result is not None
    assert result.result.reason_code == "report_complete"
    assert result.result.answer == "final"
    assert result.result.success is True
    assert len(calls) == 2


def test_report_without_answer_uses_response_content() -> None:
    model = ScriptedChatModel([ScriptedTurn(content="summary text", tool_calls=[tool_call("report", "r1")])])
    result = asyncio.run(LinearExecutionLoop().run(_build(model)))

    assert result.result is not None
    assert result.result.answer == "summary text"


def test_repeated_tool_calls_escalate_at_window() -> None:
    model = ScriptedChatModel([ScriptedTurn(tool_calls=[tool_call("echo", "c", text="same")])], repeat_last=True)
    ctx = _build(model, max_iterations=20)
    result = asyncio.run(LinearExecutionLoop(loop_window=6).run(ctx))

    assert result.outcome is LoopOutcome.ESCALATE
    assert "repeating" in (result.reason or "")
    assert ctx.run.iteration == 6


def test_max_iterations_escalates_on_last_round() -> None:
    turns = [ScriptedTurn(tool_calls=[tool_call("echo", f"c{i}", text=str(i))]) for i in range(10)]
    ctx = _build(ScriptedChatModel(turns), max_iterations=3)
    result = asyncio.run(LinearExecutionLoop().run(ctx))

    assert result.outcome is LoopOutcome.ESCALATE
    assert result.reason == "Maximum iterations reached (3)"
    assert ctx.run.iteration == 3


def test_zero_max_iterations_fails_without_calling_model() -> None:
    model = ScriptedChatModel([ScriptedTurn(content="never")])
    result = asyncio.run(LinearExecutionLoop().run(_build(model, max_iterations=0)))

    assert result.outcome is LoopOutcome.COMPLETE
    assert result.result is not None
    assert result.result.success is False
    assert result.result.answer == "No iterations executed (maxIterations = 0)"
    assert model.calls == 0


def test_hard_token_limit_synthesizes_from_last_assistant_text() -> None:
    model = ScriptedChatModel(
        [
            ScriptedTurn(content="partial one", tool_calls=[tool_call("echo", "c1", text="1")], prompt_tokens=600),
            ScriptedTurn(content="partial two", tool_calls=[tool_call("echo", "c2", text="2")], prompt_tokens=500),
            ScriptedTurn(content="never reached"),
        ]
    )
    result = asyncio.run(LinearExecutionLoop(hard_token_limit=1000).run(_build(model)))

    assert result.outcome is LoopOutcome.COMPLETE
    assert result.result is not None
    assert result.result.reason_code == "hard_budget"
    assert result.result.success is False
    assert result.result.metadata["forceSynthesis"] is True
    assert result.result.answer == "partial two"
    assert model.calls == 2


def test_budget_middleware_stop_is_seen_on_next_iteration() -> None:
    # 600 + 500 记入 BudgetManager 后，下一轮 before_iteration 由 budget middleware 停止
    mgr = BudgetManager(hard_token_limit=1000)

    def _record(usage: LLMUsage) -> None:
        mgr.record(usage.prompt_tokens, usage.completion_tokens)

    model = ScriptedChatModel(
        [
            ScriptedTurn(
                content="gathered so far",
                tool_calls=[tool_call("echo", "c1", text="1")],
                prompt_tokens=600,
                completion_tokens=500,
            ),
            ScriptedTurn(content="never reached"),
        ]
    )
    ctx = _build(model, middlewares=[BudgetMiddleware(mgr)], on_tokens=_record)
    result = asyncio.run(LinearExecutionLoop().run(ctx))

    assert result.outcome is LoopOutcome.COMPLETE
    assert result.result is not None
    assert result.result.reason_code == "hard_budget"
    assert result.result.success is False
    assert result.result.metadata["forceSynthesis"] is True
    assert result.result.answer == "gathered so far"
    assert ctx.run.meta.get("budget", "exhaustedReason") == "Token hard limit: 1100/1000"
    assert model.calls == 1
    assert ctx.run.iteration == 2


def test_llm_failure_completes_with_error() -> None:
    model = ScriptedChatModel([])
    result = asyncio.run(LinearExecutionLoop().run(_build(model)))

    assert result.result is not None
    assert result.result.success is False
    assert result.result.reason_code == "error"
    assert result.result.answer.startswith("LLM call failed:")


class _BrokenDispatch(ToolManager):
    async def execute(self, name: str, input: Dict[str, Any]) -> ToolResult:
        raise RuntimeError("dispatch table corrupted")


def test_tool_dispatch_failure_ends_run() -> None:
    model = ScriptedChatModel(
        [ScriptedTurn(tool_calls=[tool_call("echo", "c1", text="a")]), ScriptedTurn(content="never")]
    )
    result = asyncio.run(LinearExecutionLoop().run(_build(model, manager=_BrokenDispatch())))

    assert result.outcome is LoopOutcome.COMPLETE
    assert result.result is not None
    assert result.result.success is False
    assert result.result.answer == "Tool execution failed: dispatch table corrupted"
    assert model.calls == 1


def test_abort_before_first_iteration() -> None:
    token = CancellationToken()
    token.cancel("user")
    model = ScriptedChatModel([ScriptedTurn(content="never")])
    result = asyncio.run(LinearExecutionLoop().run(_build(model, abort=token)))

    assert result.result is not None
    assert result.result.reason_code == "abort_signal"
    assert result.result.success is False
    assert result.result.metadata["stopPriority"] == 0
    assert model.calls == 0


def test_abort_during_model_call() -> None:
    token = CancellationToken()

    class _Hanging:
        async def chat_with_tools(self, request: Any) -> Any:
            token.cancel("stop")
            await asyncio.sleep(10)

    ctx = _build(_Hanging(), abort=token)  # type: ignore[arg-type]
    result = asyncio.run(LinearExecutionLoop().run(ctx))

    assert result.result is not None
    assert result.result.reason_code == "abort_signal"


class _StopAt(Middleware):
    name = "stop-at"
    hooks = frozenset({HookKind.BEFORE_ITERATION})

    def __init__(self, action: ControlAction, at: int) -> None:
        self.action = action
        self.at = at

    async def before_iteration(self, run: RunContext) -> ControlAction:
        return self.action if run.iteration >= self.at else ControlAction.CONTINUE


def test_middleware_stop_completes_and_escalate_escalates() -> None:
    turns = [ScriptedTurn(content="working", tool_calls=[tool_call("echo", f"c{i}", text=str(i))]) for i in range(5)]

    stopped = asyncio.run(
        LinearExecutionLoop().run(_build(ScriptedChatModel(list(turns)), middlewares=[_StopAt(ControlAction.STOP, 2)]))
    )
    assert stopped.result is not None
    assert stopped.result.reason_code == "middleware_stop"

    escalated = asyncio.run(
        LinearExecutionLoop().run(
            _build(ScriptedChatModel(list(turns)), middlewares=[_StopAt(ControlAction.ESCALATE, 2)])
        )
    )
    assert escalated.outcome is LoopOutcome.ESCALATE
    assert escalated.reason == "Middleware requested escalation"


def test_custom_stop_condition_fires_after_builtin_priorities() -> None:
    cond = CustomStopCondition(
        name="magic",
        priority=10,
        predicate=lambda s: s.response is not None and "magic" in s.response.content,
        reason="magic word",
        reason_code="magic",
        checkpoints=frozenset({Checkpoint.RESPONSE}),
    )
    model = ScriptedChatModel([ScriptedTurn(content="the magic word", tool_calls=[tool_call("echo", "c1")])])
    result = asyncio.run(LinearExecutionLoop(stop_conditions=[cond]).run(_build(model)))

    assert result.result is not None
    assert result.result.reason_code == "magic"
    assert result.result.success is False


def test_tool_messages_follow_assistant_message() -> None:
    model = ScriptedChatModel(
        [ScriptedTurn(tool_calls=[tool_call("echo", "c1", text="x")]), ScriptedTurn(content="ok")]
    )
    ctx = _build(model)
    asyncio.run(LinearExecutionLoop().run(ctx))

    roles = [m["role"] for m in ctx.run.messages]
    assert roles == ["user", "assistant", "tool", "assistant"]
    tool_msg = ctx.run.messages[2]
    assert tool_msg["tool_call_id"] == "c1"
    assert tool_msg["content"] == "echo:x"
