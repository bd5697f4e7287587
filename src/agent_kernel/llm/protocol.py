"""
模型调用原语协议：ChatRequest / ChatModel / ChatModelProvider。

说明：
- 内核不关心模型如何被调用；只要求：给定 messages + tools（+ temperature），
  返回 `LLMCallResult{content, tool_calls, usage?}`；
- 调用失败以异常形式抛出（本地错误），不属于 stop condition 词汇表；
- 用单一参数对象承载请求，避免关键字参数不断膨胀。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol

from agent_kernel.core.contracts import LLMCallResult, Message, Tier, ToolDefinition


@dataclass(frozen=True)
class ChatRequest:
    """
    ChatRequest：单次模型调用的参数包。

    字段：
    - messages：message list（role/content/tool_calls/tool_call_id）
    - tools：模型可见工具定义
    - tier：调用档位
    - temperature：可选
    - run_id：可选，用于下游链路追踪
    - extra：provider 特有扩展字段
    """

    messages: List[Message]
    tools: List[ToolDefinition]
    tier: Tier
    temperature: Optional[float] = None
    run_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class ChatModel(Protocol):
    """支持 tool calling 的模型。"""

    async def chat_with_tools(self, request: ChatRequest) -> LLMCallResult:
        """执行一次调用；失败抛异常。"""

        ...


class ChatModelProvider(Protocol):
    """按 tier 提供模型；不可用时返回 None。"""

    def for_tier(self, tier: Tier) -> Optional[ChatModel]:
        ...


class StaticModelProvider:
    """固定映射的 provider（tier → model）。"""

    def __init__(self, models: Mapping[str, ChatModel]) -> None:
        """
        参数：
        - models：tier → ChatModel；缺失的 tier 视为不可用
        """

        self._models = dict(models)

    def for_tier(self, tier: Tier) -> Optional[ChatModel]:
        return self._models.get(tier)


__all__ = ["ChatModel", "ChatModelProvider", "ChatRequest", "StaticModelProvider"]
