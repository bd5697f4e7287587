"""
核心契约（Core Contracts）：loop / middleware / 工具执行之间传递的纯数据结构。

本模块只定义数据与能力边界，不包含业务逻辑：
- `ControlAction` / `ToolExecDecision`：hook 返回值的显式和类型（不使用魔法字符串）
- `ToolDefinition`：模型可见的工具定义（function calling 兼容）
- `ToolCallInput` / `LLMUsage` / `LLMCallResult`：模型调用原语的输入输出
- `LLMCallPatch`：`before_llm_call` 的补丁（逐字段合并）
- `LLMCtx` / `ToolExecCtx` / `ToolOutput`：hook 上下文与工具输出
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:  # pragma: no cover
    from agent_kernel.core.cancellation import CancellationToken
    from agent_kernel.core.run_context import RunContext


Tier = Literal["small", "medium", "large"]
Message = Dict[str, Any]


class ControlAction(str, Enum):
    """`before_iteration` 的返回值（显式和类型）。"""

    CONTINUE = "continue"
    STOP = "stop"
    ESCALATE = "escalate"


class ToolExecDecision(str, Enum):
    """`before_tool_exec` 的返回值。"""

    EXECUTE = "execute"
    SKIP = "skip"


class ToolDefinition(BaseModel):
    """
    模型可见的工具定义（function calling 兼容）。

    字段：
    - name：派发名（可能带 namespace 前缀，例如 `core.fs_read`）
    - description：工具说明
    - parameters：JSON Schema（object schema）
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_openai_tool(self) -> Dict[str, Any]:
        """映射为 chat.completions `tools[]` 形状。"""

        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": dict(self.parameters)},
        }


@dataclass(frozen=True)
class ToolCallInput:
    """一次工具调用请求（来自模型响应）。"""

    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)

    def to_message_dict(self) -> Dict[str, Any]:
        """转换为 assistant message 中的 tool_calls 条目。"""

        return {"id": self.id, "name": self.name, "input": dict(self.input)}


@dataclass(frozen=True)
class LLMUsage:
    """一次模型调用的 token 用量。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """prompt + completion。"""

        return int(self.prompt_tokens) + int(self.completion_tokens)


@dataclass(frozen=True)
class LLMCallResult:
    """
    模型调用原语的返回值。

    字段：
    - content：文本输出
    - tool_calls：工具调用请求（可能为空）
    - usage：可选 token 用量
    """

    content: str = ""
    tool_calls: Tuple[ToolCallInput, ...] = ()
    usage: Optional[LLMUsage] = None


@dataclass(frozen=True)
class LLMCallPatch:
    """
    `before_llm_call` 返回的补丁。

    约束：
    - 字段为 None 表示“未设置”，合并时不得覆盖先前值。
    """

    messages: Optional[List[Message]] = None
    tools: Optional[List[ToolDefinition]] = None
    temperature: Optional[float] = None

    def merged_with(self, later: Optional["LLMCallPatch"]) -> "LLMCallPatch":
        """把后来者的显式字段覆盖到当前补丁上（逐字段，None 不覆盖）。"""

        if later is None:
            return self
        updates: Dict[str, Any] = {}
        if later.messages is not None:
            updates["messages"] = later.messages
        if later.tools is not None:
            updates["tools"] = later.tools
        if later.temperature is not None:
            updates["temperature"] = later.temperature
        return replace(self, **updates) if updates else self


@dataclass
class LLMCtx:
    """`before_llm_call` / `after_llm_call` 的上下文。"""

    run: "RunContext"
    messages: List[Message]
    tools: List[ToolDefinition]
    tier: Tier
    iteration: int


@dataclass
class ToolExecCtx:
    """`before_tool_exec` / `after_tool_exec`、guard 与 output processor 的上下文。"""

    run: "RunContext"
    tool_name: str
    input: Dict[str, Any]
    iteration: int
    request_id: str
    abort: "CancellationToken"


@dataclass(frozen=True)
class ToolOutput:
    """
    单次工具调用的最终输出（回注给模型）。

    说明：
    - 单个工具返回 success=False 是数据，不是异常；模型会在下一轮看到它。
    """

    tool_call_id: str
    output: str
    success: bool
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


__all__ = [
    "ControlAction",
    "LLMCallPatch",
    "LLMCallResult",
    "LLMCtx",
    "LLMUsage",
    "Message",
    "Tier",
    "ToolCallInput",
    "ToolDefinition",
    "ToolExecCtx",
    "ToolExecDecision",
    "ToolOutput",
]
