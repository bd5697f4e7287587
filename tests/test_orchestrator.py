from __future__ import annotations

import asyncio
import json
from typing import List

from agent_kernel.agents import (
    OrchestratorConfig,
    ParallelExecutorConfig,
    SubAgentOrchestrator,
    SubAgentRequest,
    SubAgentResult,
    build_spawn_tool_pack,
)
from agent_kernel.agents.profile import AgentProfile, ProfileSpawn
from agent_kernel.core.cancellation import CancellationToken
from agent_kernel.tools.manager import ToolManager


def _echo_runner(log: List[str]):
    async def _run(request: SubAgentRequest, token_budget: int, token: CancellationToken) -> SubAgentResult:
        log.append(f"{request.agent_type}:{request.task}")
        if request.task == "explode":
            return SubAgentResult.failure(request, "sub-agent aborted by user")
        return SubAgentResult(
            task=request.task,
            agent_type=request.agent_type,
            success=True,
            result=f"ok:{request.task}",
            iterations=2,
            tokens_used=42,
        )

    return _run


def test_spawn_one_uses_requested_agent_type() -> None:
    log: List[str] = []
    orch = SubAgentOrchestrator(_echo_runner(log), CancellationToken())
    res = asyncio.run(orch.spawn_one(SubAgentRequest(task="look", agent_type="reviewer")))

    assert res.success is True
    assert res.result == "ok:look"
    assert res.iterations == 2 and res.tokens_used == 42
    assert log == ["reviewer:look"]


def test_unknown_agent_type_fails_without_running() -> None:
    log: List[str] = []
    orch = SubAgentOrchestrator(_echo_runner(log), CancellationToken())
    res = asyncio.run(orch.spawn_one(SubAgentRequest(task="x", agent_type="ghost")))

    assert res.success is False
    assert res.result.startswith("Error: Unknown agent type 'ghost'. Available: researcher")
    assert log == []


def test_spawn_beyond_max_depth_is_rejected() -> None:
    log: List[str] = []
    config = OrchestratorConfig(executor=ParallelExecutorConfig(max_depth=2))
    orch = SubAgentOrchestrator(_echo_runner(log), CancellationToken(), config=config, depth=3)
    res = asyncio.run(orch.spawn_one(SubAgentRequest(task="deep")))

    assert res.result == "Error: MaxDepth (2) exceeded at depth 3"
    assert log == []


def test_profile_allowed_types_are_enforced() -> None:
    log: List[str] = []
    lead = AgentProfile(id="lead", role="orchestrator", spawn=ProfileSpawn(allowed_profiles=["coder"]))
    orch = SubAgentOrchestrator(_echo_runner(log), CancellationToken(), profile=lead)

    denied = asyncio.run(orch.spawn_one(SubAgentRequest(task="look", agent_type="researcher")))
    assert denied.success is False
    assert denied.result == "Error: Profile 'lead' is not allowed to spawn 'researcher' at depth 0"
    assert log == []

    allowed = asyncio.run(orch.spawn_one(SubAgentRequest(task="fix", agent_type="coder")))
    assert allowed.success is True
    assert log == ["coder:fix"]


def test_profile_without_remaining_depth_cannot_spawn() -> None:
    log: List[str] = []
    # max_depth=1 的 profile 在 depth 1 处已无派生层数
    orch = SubAgentOrchestrator(
        _echo_runner(log), CancellationToken(), depth=1, profile=AgentProfile(id="mid", spawn=ProfileSpawn(max_depth=1))
    )
    res = asyncio.run(orch.spawn_one(SubAgentRequest(task="deeper", agent_type="coder")))

    assert res.success is False
    assert res.result.startswith("Error: Profile 'mid' is not allowed to spawn 'coder'")
    assert log == []


def test_sequential_stops_after_aborted_result() -> None:
    log: List[str] = []
    orch = SubAgentOrchestrator(_echo_runner(log), CancellationToken())
    requests = [SubAgentRequest(task="a"), SubAgentRequest(task="explode"), SubAgentRequest(task="c")]
    results = asyncio.run(orch.spawn_many(requests))

    assert len(results) == 2
    assert log == ["researcher:a", "researcher:explode"]


def test_parallel_strategy_runs_everything() -> None:
    log: List[str] = []
    orch = SubAgentOrchestrator(_echo_runner(log), CancellationToken(), config=OrchestratorConfig(strategy="parallel"))
    results = asyncio.run(orch.spawn_many([SubAgentRequest(task="a"), SubAgentRequest(task="b")]))

    assert [r.result for r in results] == ["ok:a", "ok:b"]
    assert sorted(log) == ["researcher:a", "researcher:b"]


def test_spawn_tool_pack_dispatches_through_manager() -> None:
    log: List[str] = []
    orch = SubAgentOrchestrator(_echo_runner(log), CancellationToken())
    mgr = ToolManager()
    mgr.register(build_spawn_tool_pack(orch))
    assert mgr.get_tool_names() == ["spawn_agent", "spawn_agents"]

    single = asyncio.run(mgr.execute("spawn_agent", {"task": "find x", "agent_type": "coder"}))
    assert single.success is True
    assert single.output == "ok:find x"
    assert single.metadata == {"sub_agent_success": True, "iterations": 2, "tokens_used": 42}

    many = asyncio.run(
        mgr.execute("spawn_agents", {"tasks": [{"task": "one"}, {"task": "two"}], "strategy": "parallel"})
    )
    summary = json.loads(many.output)
    assert [s["result"] for s in summary] == ["ok:one", "ok:two"]
    assert many.metadata == {"completed": 2, "requested": 2}


def test_spawn_tool_validates_arguments() -> None:
    orch = SubAgentOrchestrator(_echo_runner([]), CancellationToken())
    mgr = ToolManager()
    mgr.register(build_spawn_tool_pack(orch))

    assert asyncio.run(mgr.execute("spawn_agent", {"task": "  "})).error_code == "VALIDATION_ERROR"
    assert asyncio.run(mgr.execute("spawn_agent", {"task": "x", "max_iterations": 0})).error_code == "VALIDATION_ERROR"
    assert asyncio.run(mgr.execute("spawn_agents", {"tasks": []})).error_code == "VALIDATION_ERROR"
    bad_strategy = asyncio.run(mgr.execute("spawn_agents", {"tasks": [{"task": "x"}], "strategy": "random"}))
    assert bad_strategy.error == "unknown strategy: random"
