"""
Scripted 模型（离线回归夹具）。

用途：
- 在不依赖真实模型/外网的情况下，回归 loop 的编排逻辑（tool_calls → 执行 → 回注 → 继续）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from agent_kernel.core.contracts import LLMCallResult, LLMUsage, ToolCallInput
from agent_kernel.core.errors import LlmError
from agent_kernel.llm.protocol import ChatRequest


@dataclass(frozen=True)
class ScriptedTurn:
    """一次调用的预设输出。"""

    content: str = ""
    tool_calls: Sequence[ToolCallInput] = ()
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def to_result(self) -> LLMCallResult:
        usage = None
        if self.prompt_tokens or self.completion_tokens:
            usage = LLMUsage(prompt_tokens=self.prompt_tokens, completion_tokens=self.completion_tokens)
        return LLMCallResult(content=self.content, tool_calls=tuple(self.tool_calls), usage=usage)


def tool_call(name: str, call_id: Optional[str] = None, **input: Any) -> ToolCallInput:
    """便捷构造工具调用请求。"""

    return ToolCallInput(id=call_id or f"call_{name}", name=name, input=dict(input))


@dataclass
class ScriptedChatModel:
    """
    按顺序返回预设 `ScriptedTurn` 的模型。

    说明：
    - `repeat_last=True` 时，脚本耗尽后重复最后一条（用于“永不停止”的模型）；
    - 每次调用的 request 记录在 `requests` 中，便于断言。
    """

    turns: List[ScriptedTurn]
    repeat_last: bool = False
    requests: List[ChatRequest] = field(default_factory=list)

    async def chat_with_tools(self, request: ChatRequest) -> LLMCallResult:
        """
        消耗一条预设输出。

        异常：
        - LlmError：脚本已耗尽（且未开启 repeat_last）
        """

        self.requests.append(request)
        idx = len(self.requests) - 1
        if idx >= len(self.turns):
            if not self.repeat_last or not self.turns:
                raise LlmError("scripted chat model exhausted")
            idx = len(self.turns) - 1
        return self.turns[idx].to_result()

    @property
    def calls(self) -> int:
        return len(self.requests)

    def last_messages(self) -> List[Dict[str, Any]]:
        return list(self.requests[-1].messages) if self.requests else []


__all__ = ["ScriptedChatModel", "ScriptedTurn", "tool_call"]
