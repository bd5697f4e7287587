"""
Tool 协议（ToolPack / PackedTool / ToolResult / ResolvedTool）。

本模块只定义“可实现级”的最小协议：
- ToolResult：工具执行输出的统一 envelope（success/output/error/error_code/metadata）
- PackedTool：pack 内的单个工具（定义 + 执行函数 + 只读/能力标签）
- ToolPack：带 namespace、冲突策略、优先级与权限约束的工具分组
- ResolvedTool：冲突解决后的派发条目（注册期产物，调用期只做查表）

约束：
- 工具自身不感知、不执行权限检查；权限只由 ToolManager 统一执行。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from agent_kernel.core.contracts import ToolDefinition

ToolInput = Dict[str, Any]


class ToolResult(BaseModel):
    """
    Tool 执行结果（统一 envelope）。

    字段：
    - success：是否成功
    - output：回注给模型的文本
    - error：可选；错误说明（避免包含密钥）
    - error_code：可选；稳定错误码（TOOL_NOT_FOUND / PERMISSION_DENIED / PATH_DENIED / NETWORK_DENIED ...）
    - retryable：是否建议重试（权限拒绝固定为 False）
    - metadata：可选；结构化附加信息
    """

    model_config = ConfigDict(extra="forbid")

    success: bool
    output: str = ""
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, output: str, *, metadata: Optional[Dict[str, Any]] = None) -> "ToolResult":
        """便捷构造：成功结果。"""

        return cls(success=True, output=output, metadata=metadata)

    @classmethod
    def error_result(
        cls,
        *,
        code: str,
        message: str,
        retryable: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "ToolResult":
        """便捷构造：失败结果（错误码 + 可读说明）。"""

        return cls(success=False, output="", error=message, error_code=code, retryable=retryable, metadata=metadata)


ToolExecuteFn = Callable[[ToolInput], Union[ToolResult, Awaitable[ToolResult]]]


class ConflictPolicy(str, Enum):
    """
    工具名冲突策略（严格度：ERROR > NAMESPACE_PREFIX > OVERRIDE）。

    - ERROR：注册期直接失败
    - NAMESPACE_PREFIX：双方都改用 `namespace.short_name`
    - OVERRIDE：priority 更高的 pack 占用短名，另一方仅能用限定名调用
    """

    ERROR = "error"
    NAMESPACE_PREFIX = "namespace-prefix"
    OVERRIDE = "override"


_STRICTNESS = {ConflictPolicy.OVERRIDE: 0, ConflictPolicy.NAMESPACE_PREFIX: 1, ConflictPolicy.ERROR: 2}


def stricter_policy(a: ConflictPolicy, b: ConflictPolicy) -> ConflictPolicy:
    """返回两者中更严格的策略。"""

    return a if _STRICTNESS[a] >= _STRICTNESS[b] else b


class ToolPermissions(BaseModel):
    """
    pack 级权限约束（由 ToolManager 执行）。

    字段：
    - allowed_paths：允许的路径前缀；`*` 表示不限制；空列表表示不检查
    - denied_commands：禁止的命令前缀
    - network_allowed：是否允许网络类工具（按名称启发式识别）
    - audit_trail：是否对每次调用回调审计钩子
    """

    model_config = ConfigDict(extra="forbid")

    allowed_paths: List[str] = Field(default_factory=list)
    denied_commands: List[str] = Field(default_factory=list)
    network_allowed: bool = True
    audit_trail: bool = False


@dataclass(frozen=True)
class PackedTool:
    """pack 内的单个工具。"""

    definition: ToolDefinition
    execute: ToolExecuteFn
    read_only: bool = False
    capability: Optional[str] = None

    @property
    def name(self) -> str:
        return self.definition.name


@dataclass
class ToolPack:
    """
    工具分组。

    字段：
    - id：全局唯一 pack id
    - namespace：限定名前缀（例如 `core`、`mcp.github`）
    - tools：工具列表
    - conflict_policy / priority：冲突解决参数
    - permissions：可选权限约束
    - enabled：可选；注册时检查，返回 False 则跳过该 pack
    - initialize / dispose：可选生命周期回调（同步或协程函数）
    """

    id: str
    namespace: str
    tools: List[PackedTool] = field(default_factory=list)
    conflict_policy: ConflictPolicy = ConflictPolicy.NAMESPACE_PREFIX
    priority: int = 0
    version: str = "0.1.0"
    capabilities: List[str] = field(default_factory=list)
    permissions: Optional[ToolPermissions] = None
    enabled: Optional[Callable[[], bool]] = None
    initialize: Optional[Callable[[], Any]] = None
    dispose: Optional[Callable[[], Any]] = None

    def find_tool(self, short_name: str) -> Optional[PackedTool]:
        for tool in self.tools:
            if tool.name == short_name:
                return tool
        return None


@dataclass(frozen=True)
class ToolFilter:
    """`ToolManager.get_tools` 的过滤条件（None 表示不过滤）。"""

    read_only: Optional[bool] = None
    capability: Optional[str] = None
    namespace: Optional[str] = None


@dataclass(frozen=True)
class ResolvedTool:
    """
    冲突解决后的派发条目。

    字段：
    - qualified_name：派发名（短名或 `namespace.short_name`）
    - short_name：工具原始短名
    - definition：模型可见定义（name 已改写为 qualified_name）
    """

    qualified_name: str
    short_name: str
    pack_id: str
    namespace: str
    definition: ToolDefinition
    read_only: bool
    capability: Optional[str]
    execute: ToolExecuteFn


__all__ = [
    "ConflictPolicy",
    "PackedTool",
    "ResolvedTool",
    "ToolExecuteFn",
    "ToolFilter",
    "ToolInput",
    "ToolPack",
    "ToolPermissions",
    "ToolResult",
    "stricter_policy",
]
