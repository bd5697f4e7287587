"""模型调用原语协议与离线 scripted 模型。"""

from __future__ import annotations

from agent_kernel.llm.fake import ScriptedChatModel, ScriptedTurn, tool_call
from agent_kernel.llm.protocol import ChatModel, ChatModelProvider, ChatRequest, StaticModelProvider

__all__ = [
    "ChatModel",
    "ChatModelProvider",
    "ChatRequest",
    "ScriptedChatModel",
    "ScriptedTurn",
    "StaticModelProvider",
    "tool_call",
]
