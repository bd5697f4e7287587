"""内置 middleware。"""

from agent_kernel.middleware.builtin.budget import BudgetMiddleware, BudgetPolicy
from agent_kernel.middleware.builtin.context_filter import ContextFilterMiddleware
from agent_kernel.middleware.builtin.observability import ObservabilityMiddleware, track_files

__all__ = [
    "BudgetMiddleware",
    "BudgetPolicy",
    "ContextFilterMiddleware",
    "ObservabilityMiddleware",
    "track_files",
]
