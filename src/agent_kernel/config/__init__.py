"""配置加载（YAML overlays + pydantic 校验）。"""

from agent_kernel.config.defaults import load_default_config_dict
from agent_kernel.config.loader import (
    BudgetSection,
    ContextFilterSection,
    KernelConfig,
    MiddlewareSection,
    RunSection,
    ToolsSection,
    load_config,
    load_config_dicts,
)

__all__ = [
    "BudgetSection",
    "ContextFilterSection",
    "KernelConfig",
    "MiddlewareSection",
    "RunSection",
    "ToolsSection",
    "load_config",
    "load_config_dicts",
    "load_default_config_dict",
]
