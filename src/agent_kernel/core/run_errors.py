"""
Run 失败错误类型化（RunErrorKind / RunError）。

说明：
- runner 顶层绝不把异常抛给调用方；所有失败都经由本模块映射为稳定的 `error_kind`，
  写入 `TaskResult`（机器可消费，避免集成方解析 message）。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from agent_kernel.core.errors import FrameworkError, LlmError, MiddlewareError, ToolError


class RunErrorKind(str, Enum):
    """run 失败的稳定错误分类。"""

    AUTH_ERROR = "auth_error"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    HTTP_ERROR = "http_error"

    CONFIG_ERROR = "config_error"
    LLM_ERROR = "llm_error"
    TOOL_ERROR = "tool_error"
    MIDDLEWARE_ERROR = "middleware_error"

    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RunError:
    """
    RunError：结构化运行错误。

    字段：
    - error_kind：稳定分类
    - message：可读错误消息（必须避免 secrets）
    - retryable：是否建议上层重试（loop 自身从不重试）
    - retry_after_ms：可选；建议的重试等待毫秒数（例如 429 + Retry-After）
    - details：可选；结构化上下文（必须可 JSON 序列化）
    """

    error_kind: RunErrorKind
    message: str
    retryable: bool = False
    retry_after_ms: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """转换为 payload dict（稳定字段名）。"""

        out: Dict[str, Any] = {
            "error_kind": str(self.error_kind.value),
            "message": str(self.message or ""),
            "retryable": bool(self.retryable),
        }
        if self.retry_after_ms is not None:
            out["retry_after_ms"] = int(self.retry_after_ms)
        if self.details:
            out["details"] = dict(self.details)
        return out


def _classify_http_status(exc: httpx.HTTPStatusError) -> RunError:
    """把 httpx 状态码异常映射为 RunError（401/403/429/5xx）。"""

    code = int(exc.response.status_code)
    retry_after_ms: Optional[int] = None

    kind = RunErrorKind.HTTP_ERROR
    retryable = False
    if code in (401, 403):
        kind = RunErrorKind.AUTH_ERROR
    elif code == 429:
        kind = RunErrorKind.RATE_LIMITED
        retryable = True
        ra = exc.response.headers.get("Retry-After")
        if ra:
            try:
                sec = int(str(ra).strip())
                if sec > 0:
                    retry_after_ms = sec * 1000
            except (ValueError, TypeError):
                retry_after_ms = None
    elif 500 <= code <= 599:
        kind = RunErrorKind.SERVER_ERROR
        retryable = True

    msg = f"HTTP {code}"
    try:
        data = exc.response.json()
        # OpenAI 风格：{"error":{"message": "..."}}
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            em = data["error"].get("message")
            if isinstance(em, str) and em.strip():
                msg = f"HTTP {code}: {em.strip()}"
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        pass
    if len(msg) > 800:
        msg = msg[:800] + "...<truncated>"

    return RunError(
        error_kind=kind,
        message=msg,
        retryable=retryable,
        retry_after_ms=retry_after_ms,
        details={"status_code": code},
    )


def classify_run_exception(exc: BaseException) -> RunError:
    """
    将运行时异常映射为结构化 RunError。

    约束：
    - 不得包含 secrets
    - message 必须尽量简洁可读
    """

    if isinstance(exc, FrameworkError):
        return RunError(
            error_kind=RunErrorKind.CONFIG_ERROR,
            message=str(exc),
            retryable=False,
            details={"framework_code": exc.code, "framework_details": dict(exc.details)},
        )

    if isinstance(exc, MiddlewareError):
        return RunError(
            error_kind=RunErrorKind.MIDDLEWARE_ERROR,
            message=str(exc),
            retryable=False,
            details={"middleware": exc.middleware, "hook": exc.hook},
        )

    if isinstance(exc, httpx.TimeoutException):
        return RunError(error_kind=RunErrorKind.LLM_ERROR, message=str(exc), retryable=True, details={"kind": "timeout"})

    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_http_status(exc)

    if isinstance(exc, httpx.RequestError):
        return RunError(error_kind=RunErrorKind.LLM_ERROR, message=str(exc), retryable=True, details={"kind": "request_error"})

    if isinstance(exc, LlmError):
        return RunError(error_kind=RunErrorKind.LLM_ERROR, message=str(exc), retryable=True)

    if isinstance(exc, ToolError):
        return RunError(error_kind=RunErrorKind.TOOL_ERROR, message=str(exc), retryable=False)

    if isinstance(exc, ValueError):
        return RunError(error_kind=RunErrorKind.CONFIG_ERROR, message=str(exc), retryable=False)

    return RunError(error_kind=RunErrorKind.UNKNOWN, message=str(exc), retryable=False)


__all__ = ["RunError", "RunErrorKind", "classify_run_exception"]
