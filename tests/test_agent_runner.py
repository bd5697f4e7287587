from __future__ import annotations

import asyncio
from typing import Any, Dict, List

from agent_kernel import AgentRunner, load_config_dicts
from agent_kernel.agents.parallel_executor import SubAgentRequest
from agent_kernel.agents.profile import AgentProfile, ProfileSpawn
from agent_kernel.core.contracts import ControlAction, ToolDefinition
from agent_kernel.core.run_context import RunContext
from agent_kernel.events import AgentEvent, EventEmitter
from agent_kernel.llm.fake import ScriptedChatModel, ScriptedTurn, tool_call
from agent_kernel.llm.protocol import StaticModelProvider
from agent_kernel.middleware.base import FailPolicy, HookKind, Middleware
from agent_kernel.tools.protocol import PackedTool, ToolPack, ToolResult


def _core_pack() -> ToolPack:
    def _echo(input: Dict[str, Any]) -> ToolResult:
        return ToolResult.ok(f"echo:{input.get('text', '')}")

    def _write(input: Dict[str, Any]) -> ToolResult:
        return ToolResult.ok(f"File created: {input.get('path')}")

    return ToolPack(
        id="core",
        namespace="core",
        tools=[
            PackedTool(definition=ToolDefinition(name="echo"), execute=_echo, read_only=True),
            PackedTool(definition=ToolDefinition(name="fs_write"), execute=_write),
        ],
    )


def _collect(emitter: EventEmitter) -> List[AgentEvent]:
    events: List[AgentEvent] = []
    emitter.notifier.subscribe(events.append)
    return events


def test_simple_run_completes() -> None:
    model = ScriptedChatModel([ScriptedTurn(content="all good", prompt_tokens=5, completion_tokens=5)])
    runner = AgentRunner(models=StaticModelProvider({"medium": model}), tool_packs=[_core_pack()], session_id="s")
    result = asyncio.run(runner.run("say hi"))

    assert result.success is True
    assert result.summary == "all good"
    assert result.reason_code == "no_tool_calls"
    assert result.tier == "medium"
    assert result.iterations == 1
    assert result.tokens_used == 10
    assert result.session_id == "s"

    first = model.requests[0].messages
    assert first[0]["role"] == "system"
    assert first[1] == {"role": "user", "content": "say hi"}
    assert [t.name for t in model.requests[0].tools] == ["echo", "fs_write"]


def test_max_iterations_escalates_to_next_tier() -> None:
    medium = ScriptedChatModel(
        [
            ScriptedTurn(tool_calls=[tool_call("echo", "c1", text="a")]),
            ScriptedTurn(tool_calls=[tool_call("echo", "c2", text="b")]),
        ]
    )
    large = ScriptedChatModel([ScriptedTurn(content="big answer")])
    emitter = EventEmitter()
    events = _collect(emitter)
    runner = AgentRunner(
        models=StaticModelProvider({"medium": medium, "large": large}),
        config=load_config_dicts([{"run": {"max_iterations": 2}}]),
        tool_packs=[_core_pack()],
        emitter=emitter,
    )
    result = asyncio.run(runner.run("hard task"))

    assert result.success is True
    assert result.summary == "big answer"
    assert result.tier == "large"
    assert result.iterations == 3
    escalations = [e for e in events if e.type == "escalate"]
    assert len(escalations) == 1
    assert escalations[0].payload["from_tier"] == "medium"
    assert escalations[0].payload["to_tier"] == "large"
    # 新 tier 从原始任务重新开始
    assert large.requests[0].messages[1] == {"role": "user", "content": "hard task"}


def test_escalation_at_top_tier_fails() -> None:
    model = ScriptedChatModel([ScriptedTurn(tool_calls=[tool_call("echo", "c", text="x")])], repeat_last=True)
    runner = AgentRunner(
        models=StaticModelProvider({"large": model}),
        config=load_config_dicts([{"run": {"tier": "large", "loop_window": 2}}]),
        tool_packs=[_core_pack()],
    )
    result = asyncio.run(runner.run("spin"))

    assert result.success is False
    assert result.reason_code == "escalate"
    assert (result.error or "").startswith("Escalation requested at tier large")
    assert result.iterations == 2


def test_escalation_disabled_fails_at_start_tier() -> None:
    model = ScriptedChatModel([ScriptedTurn(tool_calls=[tool_call("echo", "c", text="x")])], repeat_last=True)
    large = ScriptedChatModel([ScriptedTurn(content="unused")])
    runner = AgentRunner(
        models=StaticModelProvider({"medium": model, "large": large}),
        config=load_config_dicts([{"run": {"max_iterations": 1, "enable_escalation": False}}]),
        tool_packs=[_core_pack()],
    )
    result = asyncio.run(runner.run("t"))
    assert result.success is False
    assert result.tier == "medium"
    assert large.calls == 0


def test_missing_model_is_config_error() -> None:
    runner = AgentRunner(models=StaticModelProvider({}))
    result = asyncio.run(runner.run("t"))
    assert result.success is False
    assert result.error_kind == "config_error"
    assert "no chat model configured for tier 'medium'" in (result.error or "")


class _FailClosed(Middleware):
    name = "strict"
    fail_policy = FailPolicy.FAIL_CLOSED
    hooks = frozenset({HookKind.BEFORE_ITERATION})

    async def before_iteration(self, run: RunContext) -> ControlAction:
        raise RuntimeError("policy store offline")


def test_fail_closed_middleware_error_ends_run() -> None:
    model = ScriptedChatModel([ScriptedTurn(content="never")])
    runner = AgentRunner(models=StaticModelProvider({"medium": model}), middlewares=[_FailClosed()])
    result = asyncio.run(runner.run("t"))
    assert result.success is False
    assert result.error_kind == "middleware_error"
    assert model.calls == 0


def test_request_stop_aborts_run() -> None:
    model = ScriptedChatModel([ScriptedTurn(content="never")])
    runner = AgentRunner(models=StaticModelProvider({"medium": model}))
    runner.request_stop("user cancelled")
    result = asyncio.run(runner.run("t"))

    assert result.success is False
    assert result.reason_code == "abort_signal"
    assert model.calls == 0


def test_injected_user_context_reaches_next_iteration() -> None:
    model = ScriptedChatModel([ScriptedTurn(content="done")])
    runner = AgentRunner(models=StaticModelProvider({"medium": model}))
    runner.inject_user_context("also check the tests")
    asyncio.run(runner.run("t"))

    assert model.requests[0].messages[-1] == {"role": "user", "content": "also check the tests"}


def test_files_touched_are_reported() -> None:
    model = ScriptedChatModel(
        [ScriptedTurn(tool_calls=[tool_call("fs_write", "w1", path="notes.md")]), ScriptedTurn(content="written")]
    )
    runner = AgentRunner(models=StaticModelProvider({"medium": model}), tool_packs=[_core_pack()])
    result = asyncio.run(runner.run("write notes"))

    assert result.success is True
    assert result.files_created == ["notes.md"]
    assert result.files_modified == []


def test_orchestrator_profile_spawns_read_only_child() -> None:
    model = ScriptedChatModel(
        [
            ScriptedTurn(tool_calls=[tool_call("spawn_agent", "s1", task="dig into logs", agent_type="researcher")]),
            ScriptedTurn(content="child found it"),
            ScriptedTurn(content="final answer"),
        ]
    )
    emitter = EventEmitter()
    events = _collect(emitter)
    runner = AgentRunner(
        models=StaticModelProvider({"medium": model}),
        tool_packs=[_core_pack()],
        emitter=emitter,
        profile=AgentProfile(id="lead", role="orchestrator"),
    )
    result = asyncio.run(runner.run("investigate"))

    assert result.success is True
    assert result.summary == "final answer"

    parent_tools = [t.name for t in model.requests[0].tools]
    assert "spawn_agent" in parent_tools and "spawn_agents" in parent_tools

    child_request = model.requests[1]
    # researcher 只读且不可继续派生
    assert [t.name for t in child_request.tools] == ["echo"]
    assert "You are a researcher" in child_request.messages[0]["content"]
    assert child_request.messages[1] == {"role": "user", "content": "dig into logs"}

    # 子 agent 的结果回注给父 agent
    tool_msg = model.requests[2].messages[-1]
    assert tool_msg["role"] == "tool"
    assert tool_msg["content"] == "child found it"

    spawns = [e for e in events if e.type == "spawn"]
    assert len(spawns) == 1
    assert spawns[0].payload["agent_type"] == "researcher"
    assert spawns[0].payload["depth"] == 1
    child_starts = [e for e in events if e.type == "run_start" and e.parent_agent_id == runner.agent_id]
    assert len(child_starts) == 1


def test_profile_without_spawn_depth_gets_no_spawn_tools() -> None:
    model = ScriptedChatModel([ScriptedTurn(content="ok")])
    runner = AgentRunner(
        models=StaticModelProvider({"medium": model}),
        tool_packs=[_core_pack()],
        profile=AgentProfile(id="leaf", role="atomic"),
    )
    asyncio.run(runner.run("t"))
    assert [t.name for t in model.requests[0].tools] == ["echo", "fs_write"]


def _spawning_model(agent_type: str) -> ScriptedChatModel:
    return ScriptedChatModel(
        [
            ScriptedTurn(tool_calls=[tool_call("spawn_agent", "s1", task="split the work", agent_type=agent_type)]),
            ScriptedTurn(content="child done"),
            ScriptedTurn(content="final answer"),
        ]
    )


def test_child_spawn_depth_is_bounded_by_parent_profile() -> None:
    # 父 profile 只剩 1 层：orchestrator 子 agent 不能继续派生
    model = _spawning_model("orchestrator")
    emitter = EventEmitter()
    events = _collect(emitter)
    runner = AgentRunner(
        models=StaticModelProvider({"medium": model}),
        tool_packs=[_core_pack()],
        emitter=emitter,
        profile=AgentProfile(id="lead", role="orchestrator", spawn=ProfileSpawn(max_depth=1)),
    )
    result = asyncio.run(runner.run("plan"))

    assert result.success is True
    assert [t.name for t in model.requests[1].tools] == ["echo"]
    spawn = [e for e in events if e.type == "spawn"][0]
    assert spawn.payload["spawn_depth"] == 0


def test_child_keeps_remaining_spawn_depth() -> None:
    model = _spawning_model("orchestrator")
    emitter = EventEmitter()
    events = _collect(emitter)
    runner = AgentRunner(
        models=StaticModelProvider({"medium": model}),
        tool_packs=[_core_pack()],
        emitter=emitter,
        profile=AgentProfile(id="lead", role="orchestrator", spawn=ProfileSpawn(max_depth=2)),
    )
    asyncio.run(runner.run("plan"))

    child_tools = [t.name for t in model.requests[1].tools]
    assert "spawn_agent" in child_tools
    spawn = [e for e in events if e.type == "spawn"][0]
    assert spawn.payload["spawn_depth"] == 1


def test_spawn_outside_allowed_profiles_is_rejected() -> None:
    model = ScriptedChatModel(
        [
            ScriptedTurn(tool_calls=[tool_call("spawn_agent", "s1", task="look around", agent_type="researcher")]),
            ScriptedTurn(content="final answer"),
        ]
    )
    runner = AgentRunner(
        models=StaticModelProvider({"medium": model}),
        tool_packs=[_core_pack()],
        profile=AgentProfile(id="lead", role="orchestrator", spawn=ProfileSpawn(allowed_profiles=["coder"])),
    )
    result = asyncio.run(runner.run("t"))

    assert result.success is True
    # 子 agent 未运行：模型只被父 agent 调用两次
    assert model.calls == 2
    tool_msg = model.requests[1].messages[-1]
    assert tool_msg["role"] == "tool"
    assert tool_msg["content"].startswith("Error: Profile 'lead' is not allowed to spawn 'researcher'")


def test_hard_token_limit_stops_after_one_call() -> None:
    model = ScriptedChatModel(
        [
            ScriptedTurn(
                content="partial findings",
                tool_calls=[tool_call("echo", "c1", text="x")],
                prompt_tokens=600,
                completion_tokens=500,
            ),
            ScriptedTurn(content="never"),
        ]
    )
    runner = AgentRunner(
        models=StaticModelProvider({"medium": model}),
        config=load_config_dicts([{"budget": {"hard_token_limit": 1000}}]),
        tool_packs=[_core_pack()],
    )
    result = asyncio.run(runner.run("t"))

    assert model.calls == 1
    assert result.success is False
    assert result.reason_code == "hard_budget"
    assert result.summary == "partial findings"
    assert result.tokens_used == 1100


class _BudgetMetaCapture(Middleware):
    name = "meta-capture"
    hooks = frozenset({HookKind.ON_STOP})

    def __init__(self) -> None:
        self.force_synthesis = None
        self.reason = None

    async def on_stop(self, run: RunContext, reason: str) -> None:
        self.force_synthesis = run.meta.get("budget", "forceSynthesis")
        self.reason = reason


def test_token_budget_exhaustion_forces_synthesis_via_budget_middleware() -> None:
    model = ScriptedChatModel(
        [
            ScriptedTurn(
                content="partial findings",
                tool_calls=[tool_call("echo", "c1", text="x")],
                prompt_tokens=600,
                completion_tokens=500,
            ),
            ScriptedTurn(content="never"),
        ]
    )
    capture = _BudgetMetaCapture()
    runner = AgentRunner(
        models=StaticModelProvider({"medium": model}),
        config=load_config_dicts([{"budget": {"token_budget": 1000}}]),
        tool_packs=[_core_pack()],
        middlewares=[capture],
    )
    result = asyncio.run(runner.run("t"))

    assert model.calls == 1
    assert result.reason_code == "hard_budget"
    assert result.summary == "partial findings"
    assert capture.force_synthesis is True
    assert capture.reason == "hard_budget"


def test_iteration_budget_config_bounds_the_run() -> None:
    model = ScriptedChatModel([ScriptedTurn(content="step", tool_calls=[tool_call("echo", "c", text="x")])], repeat_last=True)
    runner = AgentRunner(
        models=StaticModelProvider({"medium": model}),
        config=load_config_dicts([{"budget": {"iteration_budget": 2}, "run": {"loop_window": 10}}]),
        tool_packs=[_core_pack()],
    )
    result = asyncio.run(runner.run("t"))

    assert model.calls == 2
    assert result.reason_code == "hard_budget"
    assert result.iterations == 3


def test_tier_escalation_flag_controls_child_escalation() -> None:
    medium = ScriptedChatModel([ScriptedTurn(tool_calls=[tool_call("echo", "c", text="x")])], repeat_last=True)
    large = ScriptedChatModel([ScriptedTurn(content="large done")], repeat_last=True)
    parent = AgentRunner(
        models=StaticModelProvider({"medium": medium, "large": large}),
        tool_packs=[_core_pack()],
        profile=AgentProfile(id="lead", role="orchestrator"),
    )

    # researcher 预设未开启 tierEscalation：停在 medium
    researcher = asyncio.run(
        parent.spawn_child(SubAgentRequest(task="t", agent_type="researcher", max_iterations=1), 0, parent.token)
    )
    assert researcher.success is False
    assert (researcher.error or "").startswith("Escalation requested at tier medium")
    assert large.calls == 0

    # orchestrator 预设开启 tierEscalation：升级到 large
    lead = asyncio.run(
        parent.spawn_child(SubAgentRequest(task="t", agent_type="orchestrator", max_iterations=1), 0, parent.token)
    )
    assert lead.success is True
    assert lead.result == "large done"


def test_feature_flags_are_visible_to_middleware() -> None:
    seen: Dict[str, Any] = {}

    class _Flags(Middleware):
        name = "flags"
        hooks = frozenset({HookKind.ON_STOP})

        async def on_stop(self, run: RunContext, reason: str) -> None:
            seen.update(run.meta.get("agent", "featureFlags") or {})

    runner = AgentRunner(
        models=StaticModelProvider({"medium": ScriptedChatModel([ScriptedTurn(content="ok")])}),
        middlewares=[_Flags()],
        feature_flags={"reflection": True, "tierEscalation": False},
    )
    asyncio.run(runner.run("t"))
    assert seen == {"reflection": True, "tierEscalation": False}
