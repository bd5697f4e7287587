"""
spawn 工具包：业务逻辑进入 SubAgentOrchestrator 的唯一入口。

工具：
- spawn_agent：派生单个子 agent（`task`，可选 `agent_type` / `max_iterations` / `working_dir`）
- spawn_agents：按策略派生一批子 agent（`tasks` 列表，可选 `strategy`）

说明：
- 参数错误返回 `VALIDATION_ERROR` 结果（数据，不抛异常）；
- 子 agent 失败时工具调用本身仍然成功返回文本，由模型决定下一步。
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from agent_kernel.agents.orchestrator import SubAgentOrchestrator
from agent_kernel.agents.parallel_executor import DEFAULT_AGENT_TYPE, SubAgentRequest
from agent_kernel.core.contracts import ToolDefinition
from agent_kernel.tools.protocol import ConflictPolicy, PackedTool, ToolInput, ToolPack, ToolResult

SPAWN_PACK_ID = "spawn"
SPAWN_NAMESPACE = "agents"

_REQUEST_PROPERTIES: Dict[str, Any] = {
    "task": {"type": "string", "description": "Self-contained task description for the sub-agent."},
    "agent_type": {"type": "string", "description": "Agent type id from the registry.", "default": DEFAULT_AGENT_TYPE},
    "max_iterations": {"type": "integer", "minimum": 1},
    "working_dir": {"type": "string"},
}


def _parse_request(raw: Any) -> Optional[SubAgentRequest]:
    if not isinstance(raw, dict):
        return None
    task = raw.get("task")
    if not isinstance(task, str) or not task.strip():
        return None
    agent_type = raw.get("agent_type") or DEFAULT_AGENT_TYPE
    max_iterations = raw.get("max_iterations")
    if max_iterations is not None and (not isinstance(max_iterations, int) or max_iterations < 1):
        return None
    working_dir = raw.get("working_dir")
    return SubAgentRequest(
        task=task,
        agent_type=str(agent_type),
        max_iterations=max_iterations,
        working_dir=working_dir if isinstance(working_dir, str) else None,
    )


def build_spawn_tool_pack(orchestrator: SubAgentOrchestrator, *, priority: int = 0) -> ToolPack:
    """构造绑定到 orchestrator 的 spawn 工具包。"""

    async def spawn_agent(input: ToolInput) -> ToolResult:
        request = _parse_request(input)
        if request is None:
            return ToolResult.error_result(code="VALIDATION_ERROR", message="spawn_agent requires a non-empty 'task'")
        result = await orchestrator.spawn_one(request)
        return ToolResult(
            success=True,
            output=result.result,
            metadata={
                "sub_agent_success": result.success,
                "iterations": result.iterations,
                "tokens_used": result.tokens_used,
            },
        )

    async def spawn_agents(input: ToolInput) -> ToolResult:
        raw_tasks = input.get("tasks")
        if not isinstance(raw_tasks, list) or not raw_tasks:
            return ToolResult.error_result(code="VALIDATION_ERROR", message="spawn_agents requires a non-empty 'tasks' list")
        requests: List[SubAgentRequest] = []
        for idx, raw in enumerate(raw_tasks):
            request = _parse_request(raw)
            if request is None:
                return ToolResult.error_result(code="VALIDATION_ERROR", message=f"tasks[{idx}] is invalid")
            requests.append(request)
        strategy = input.get("strategy")
        if strategy not in (None, "auto", "sequential", "parallel"):
            return ToolResult.error_result(code="VALIDATION_ERROR", message=f"unknown strategy: {strategy}")

        results = await orchestrator.spawn_many(requests, strategy)
        summary = [
            {
                "task": r.task,
                "agent_type": r.agent_type,
                "success": r.success,
                "result": r.result,
                "error": r.error,
                "timed_out": r.timed_out,
                "deduped": r.deduped,
            }
            for r in results
        ]
        return ToolResult.ok(
            json.dumps(summary, ensure_ascii=False),
            metadata={"completed": len(results), "requested": len(requests)},
        )

    tools = [
        PackedTool(
            definition=ToolDefinition(
                name="spawn_agent",
                description="Delegate a self-contained subtask to a sub-agent and wait for its result.",
                parameters={"type": "object", "properties": dict(_REQUEST_PROPERTIES), "required": ["task"]},
            ),
            execute=spawn_agent,
            capability="delegation",
        ),
        PackedTool(
            definition=ToolDefinition(
                name="spawn_agents",
                description="Delegate several independent subtasks to sub-agents.",
                parameters={
                    "type": "object",
                    "properties": {
                        "tasks": {
                            "type": "array",
                            "items": {"type": "object", "properties": dict(_REQUEST_PROPERTIES), "required": ["task"]},
                        },
                        "strategy": {"type": "string", "enum": ["auto", "sequential", "parallel"]},
                    },
                    "required": ["tasks"],
                },
            ),
            execute=spawn_agents,
            capability="delegation",
        ),
    ]
    return ToolPack(
        id=SPAWN_PACK_ID,
        namespace=SPAWN_NAMESPACE,
        tools=tools,
        conflict_policy=ConflictPolicy.ERROR,
        priority=priority,
        capabilities=["delegation"],
    )


__all__ = ["SPAWN_NAMESPACE", "SPAWN_PACK_ID", "build_spawn_tool_pack"]
