"""
PromptInjectionGuard：拦截工具输入中常见的 prompt injection 片段（启发式）。
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Sequence

from agent_kernel.core.contracts import ToolExecCtx
from agent_kernel.guards.pipeline import GuardResult, ToolGuard

_MAX_DEPTH = 5

DEFAULT_INJECTION_PATTERNS: Sequence[re.Pattern[str]] = (
    re.compile(r"\bignore\s+(all\s+)?previous\s+instructions?\b", re.I),
    re.compile(r"\bforget\s+(everything|all)\s+(above|before|prior)\b", re.I),
    re.compile(r"\byou\s+are\s+now\s+(a\s+)?(?:DAN|evil|unrestricted|jailbroken)\b", re.I),
    re.compile(r"\bact\s+as\s+(if\s+you\s+are\s+)?(?:a\s+)?(?:different\s+)?ai\b", re.I),
    re.compile(r"\bpretend\s+(you\s+are|to\s+be)\s+(?:a\s+)?(?:different\s+)?ai\b", re.I),
    re.compile(r"\bprint\s+your\s+(system\s+)?prompt\b", re.I),
    re.compile(r"\breveal\s+(your\s+)?(system\s+)?prompt\b", re.I),
    re.compile(r"\brepeat\s+everything\s+(above|before)\b", re.I),
    re.compile(r"<<<\s*SYSTEM\s*>>>", re.I),
    re.compile(r"\[INST\].*\[/INST\]", re.I),
)


class PromptInjectionGuard(ToolGuard):
    name = "prompt-injection"

    def __init__(self, patterns: Optional[Sequence[re.Pattern[str]]] = None) -> None:
        self.patterns = list(patterns) if patterns is not None else list(DEFAULT_INJECTION_PATTERNS)

    def validate_input(self, tool_name: str, input: Dict[str, Any], ctx: ToolExecCtx) -> GuardResult:
        for value in _extract_strings(input):
            for pattern in self.patterns:
                if pattern.search(value):
                    return GuardResult.reject(f'Prompt injection pattern detected in input to "{tool_name}"')
        return GuardResult.allow()


def _extract_strings(obj: Any, depth: int = 0) -> List[str]:
    """递归收集字符串值（限制深度）。"""

    if depth > _MAX_DEPTH:
        return []
    if isinstance(obj, str):
        return [obj]
    if isinstance(obj, (list, tuple)):
        return [s for v in obj for s in _extract_strings(v, depth + 1)]
    if isinstance(obj, dict):
        return [s for v in obj.values() for s in _extract_strings(v, depth + 1)]
    return []


__all__ = ["DEFAULT_INJECTION_PATTERNS", "PromptInjectionGuard"]
