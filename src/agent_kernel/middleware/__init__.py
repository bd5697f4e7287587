"""Middleware 基类与 pipeline。"""

from agent_kernel.middleware.base import DEFAULT_HOOK_TIMEOUT_MS, FailPolicy, HookKind, Middleware
from agent_kernel.middleware.pipeline import MiddlewareErrorCallback, MiddlewarePipeline

__all__ = [
    "DEFAULT_HOOK_TIMEOUT_MS",
    "FailPolicy",
    "HookKind",
    "Middleware",
    "MiddlewareErrorCallback",
    "MiddlewarePipeline",
]
