"""
SecretRedactionGuard：在工具输出进入上下文前替换常见密钥。

说明：
- 只作用于输出；命中时返回 sanitize（调用仍然成功，只是敏感值被替换）。
- `anthropic-key` 排在 `openai-key` 之前，避免 `sk-ant-` 前缀被较宽的规则先吞掉。
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Union

from agent_kernel.core.contracts import ToolExecCtx
from agent_kernel.guards.pipeline import GuardResult, ToolGuard

Replacement = Union[str, Callable[[re.Match[str]], str]]


@dataclass(frozen=True)
class SecretPattern:
    name: str
    pattern: re.Pattern[str]
    replacement: Replacement


def _redact_captured(m: re.Match[str]) -> str:
    """只替换捕获组中的值，保留前面的键名。"""

    return m.group(0).replace(m.group(1), "[REDACTED]")


DEFAULT_SECRET_PATTERNS: Sequence[SecretPattern] = (
    SecretPattern("anthropic-key", re.compile(r"sk-ant-[A-Za-z0-9_-]{20,}"), "[REDACTED:anthropic-key]"),
    SecretPattern("openai-key", re.compile(r"sk-[A-Za-z0-9_-]{20,}"), "[REDACTED:openai-key]"),
    SecretPattern("aws-access-key", re.compile(r"\bAKIA[0-9A-Z]{16}\b"), "[REDACTED:aws-access-key]"),
    SecretPattern(
        "aws-secret-key",
        re.compile(
            r"(?:aws[_-]?secret[_-]?(?:access[_-]?)?key|AWS_SECRET)[^\n\"']*[\"'\s=:]+([A-Za-z0-9/+]{40})", re.I
        ),
        "[REDACTED:aws-secret]",
    ),
    SecretPattern("github-token", re.compile(r"\bgh[pousr]_[A-Za-z0-9]{36}\b"), "[REDACTED:github-token]"),
    SecretPattern(
        "generic-token",
        re.compile(
            r"(?:(?:api[_-]?key|access[_-]?token|auth[_-]?token|bearer[_-]?token|secret[_-]?key)"
            r"[^\n\"']{0,20}[\"'\s=:]+)([A-Za-z0-9_\-./+]{32,})",
            re.I,
        ),
        _redact_captured,
    ),
)


class SecretRedactionGuard(ToolGuard):
    name = "secret-redaction"

    def __init__(self, patterns: Optional[Sequence[SecretPattern]] = None) -> None:
        self.patterns = list(patterns) if patterns is not None else list(DEFAULT_SECRET_PATTERNS)

    def redact(self, text: str) -> str:
        for secret in self.patterns:
            text = secret.pattern.sub(secret.replacement, text)
        return text

    def validate_output(self, tool_name: str, output: str, ctx: ToolExecCtx) -> GuardResult:
        redacted = self.redact(output)
        if redacted == output:
            return GuardResult.allow()
        return GuardResult.sanitize(redacted, "secrets redacted from output")


__all__ = ["DEFAULT_SECRET_PATTERNS", "SecretPattern", "SecretRedactionGuard"]
