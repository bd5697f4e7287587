"""
内核错误分类（异常类型）。

说明：
- 受控停止（abort / budget / 迭代上限 / loop / 自然完成 / report）不是异常，而是 loop 的终态结果；
- 权限/guard 拒绝是 `ToolResult` 数据，不抛异常；
- 异常只用于“派发机制本身失效”（LLM 调用层、工具执行层）与 fail-closed middleware。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


class AgentKernelError(Exception):
    """内核错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """框架结构化问题对象（可序列化到日志/结果 details）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(AgentKernelError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """用户输入/配置导致的错误。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        """创建 `UserError`。

        参数：
        - `message`：可读错误信息
        - `code`：错误码（默认 `USER_ERROR`）
        - `details`：结构化补充信息
        """

        super().__init__(code=code, message=message, details=details or {})


class ToolRegistrationError(FrameworkError):
    """
    ToolPack 注册失败（注册期错误，不会在调用期出现）。

    常见 code：
    - `DUPLICATE_PACK`：pack id 重复
    - `TOOL_CONFLICT`：有效冲突策略为 `error` 时的工具名冲突
    """


class MiddlewareError(AgentKernelError):
    """fail-closed middleware 的 hook 失败（会终止 run）。"""

    def __init__(self, *, middleware: str, hook: str, cause: BaseException) -> None:
        """
        创建 middleware 错误。

        参数：
        - middleware：middleware 名称
        - hook：hook 名称（例如 `before_iteration`）
        - cause：原始异常
        """

        super().__init__(f"middleware {middleware!r} failed in {hook}: {cause}")
        self.middleware = middleware
        self.hook = hook
        self.cause = cause


class ToolError(AgentKernelError):
    """工具执行层失败（派发机制本身失效，而非单个工具返回 success=false）。"""


class LlmError(AgentKernelError):
    """LLM 调用层错误（网络、限流、协议解析等）。"""


__all__ = [
    "AgentKernelError",
    "FrameworkError",
    "FrameworkIssue",
    "LlmError",
    "MiddlewareError",
    "ToolError",
    "ToolRegistrationError",
    "UserError",
]
