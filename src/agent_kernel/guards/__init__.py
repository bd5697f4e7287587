"""工具输入/输出 guard。"""

from agent_kernel.guards.path_sandbox import PATH_ARG_KEYS, PathSandboxGuard
from agent_kernel.guards.pipeline import GuardAction, GuardPipeline, GuardResult, OutputVerdict, ToolGuard
from agent_kernel.guards.prompt_injection import DEFAULT_INJECTION_PATTERNS, PromptInjectionGuard
from agent_kernel.guards.secret_redaction import DEFAULT_SECRET_PATTERNS, SecretPattern, SecretRedactionGuard

__all__ = [
    "DEFAULT_INJECTION_PATTERNS",
    "DEFAULT_SECRET_PATTERNS",
    "GuardAction",
    "GuardPipeline",
    "GuardResult",
    "OutputVerdict",
    "PATH_ARG_KEYS",
    "PathSandboxGuard",
    "PromptInjectionGuard",
    "SecretPattern",
    "SecretRedactionGuard",
    "ToolGuard",
]
