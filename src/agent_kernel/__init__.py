"""
Agent Kernel（Python）。

说明：
- 本包为 agent 执行内核：middleware pipeline、线性执行 loop、预算与 tier 升级、
  ToolManager（pack/冲突/权限/guard/输出处理）以及子 agent 编排。
- 宿主入口为 `AgentRunner`；各子包可独立使用（例如只用 `ToolManager` 或 `ParallelExecutor`）。
"""

from __future__ import annotations

from agent_kernel.agents.orchestrator import SubAgentOrchestrator
from agent_kernel.agents.registry import AgentRegistry, create_default_registry
from agent_kernel.config.loader import KernelConfig, load_config, load_config_dicts
from agent_kernel.runner import AgentRunner, TaskResult
from agent_kernel.tools.manager import ToolManager

__all__ = [
    "AgentRegistry",
    "AgentRunner",
    "KernelConfig",
    "SubAgentOrchestrator",
    "TaskResult",
    "ToolManager",
    "__version__",
    "create_default_registry",
    "load_config",
    "load_config_dicts",
]

__version__ = "0.1.0"
