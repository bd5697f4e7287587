"""子 agent 委派：profile、类型注册表、并行执行器与 orchestrator。"""

from agent_kernel.agents.orchestrator import DelegationStrategy, OrchestratorConfig, SpawnResult, SubAgentOrchestrator
from agent_kernel.agents.parallel_executor import (
    DEFAULT_AGENT_TYPE,
    ParallelExecutor,
    ParallelExecutorConfig,
    SubAgentRequest,
    SubAgentResult,
    SubAgentRunner,
)
from agent_kernel.agents.profile import AgentProfile, AgentRole, ProfileBudget, ProfileSpawn
from agent_kernel.agents.registry import AgentRegistry, AgentTypeDefinition, DEFAULT_FEATURE_FLAGS, create_default_registry
from agent_kernel.agents.spawn_tool import SPAWN_NAMESPACE, SPAWN_PACK_ID, build_spawn_tool_pack

__all__ = [
    "AgentProfile",
    "AgentRegistry",
    "AgentRole",
    "AgentTypeDefinition",
    "DEFAULT_AGENT_TYPE",
    "DEFAULT_FEATURE_FLAGS",
    "DelegationStrategy",
    "OrchestratorConfig",
    "ParallelExecutor",
    "ParallelExecutorConfig",
    "ProfileBudget",
    "ProfileSpawn",
    "SPAWN_NAMESPACE",
    "SPAWN_PACK_ID",
    "SpawnResult",
    "SubAgentOrchestrator",
    "SubAgentRequest",
    "SubAgentResult",
    "SubAgentRunner",
    "build_spawn_tool_pack",
]
