"""
ContextFilterMiddleware：限制送入模型的历史长度。

before_llm_call：
- 前缀：第一条 assistant 消息之前的全部消息（system / 任务），原样保留；
- 轮次：每条 assistant 消息开启一轮，后续 tool/user 消息归入该轮；
- 只保留最近 N 轮，丢弃时插入一条 system 说明；
- 超长 tool 消息截断到 max_output_length。

说明：
- 只改写本次调用的消息副本，不修改 run 历史；
- 没有任何变化时返回 None（不产生补丁）。
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from agent_kernel.core.contracts import LLMCallPatch, LLMCtx, Message
from agent_kernel.middleware.base import FailPolicy, HookKind, Middleware

DEFAULT_SLIDING_WINDOW = 10
DEFAULT_MAX_TOOL_OUTPUT = 8000


class ContextFilterMiddleware(Middleware):
    name = "context-filter"
    order = 15
    fail_policy = FailPolicy.FAIL_OPEN
    timeout_ms = 1000
    hooks = frozenset({HookKind.BEFORE_LLM_CALL})

    def __init__(
        self,
        *,
        sliding_window_size: int = DEFAULT_SLIDING_WINDOW,
        max_output_length: int = DEFAULT_MAX_TOOL_OUTPUT,
    ) -> None:
        if int(sliding_window_size) <= 0:
            raise ValueError("sliding_window_size must be positive")
        if int(max_output_length) <= 0:
            raise ValueError("max_output_length must be positive")
        self.sliding_window_size = int(sliding_window_size)
        self.max_output_length = int(max_output_length)

    async def before_llm_call(self, ctx: LLMCtx) -> Optional[LLMCallPatch]:
        msgs = ctx.messages
        prefix_end = _find_prefix_end(msgs)
        if prefix_end >= len(msgs):
            return None

        prefix = list(msgs[:prefix_end])
        tail = msgs[prefix_end:]
        rounds = _split_into_rounds(tail)

        if len(rounds) <= self.sliding_window_size:
            truncated = [self._truncate(m) for r in rounds for m in r]
            if [m.get("content") for m in truncated] == [m.get("content") for m in tail]:
                return None
            return LLMCallPatch(messages=prefix + truncated)

        kept = rounds[-self.sliding_window_size :]
        dropped = len(rounds) - self.sliding_window_size
        note: Message = {
            "role": "system",
            "content": f"[Context filter: {dropped} earlier iteration(s) removed to stay within context window]",
        }
        return LLMCallPatch(messages=prefix + [note] + [self._truncate(m) for r in kept for m in r])

    def _truncate(self, msg: Message) -> Message:
        if msg.get("role") != "tool":
            return msg
        content = msg.get("content")
        content = content if isinstance(content, str) else ""
        if len(content) <= self.max_output_length:
            return msg
        remaining = len(content) - self.max_output_length
        return {**msg, "content": f"{content[: self.max_output_length]}\n\n... ({remaining} more characters truncated)"}


def _find_prefix_end(msgs: Sequence[Message]) -> int:
    for i, m in enumerate(msgs):
        if m.get("role") == "assistant":
            return i
    return len(msgs)


def _split_into_rounds(msgs: Sequence[Message]) -> List[List[Message]]:
    rounds: List[List[Message]] = []
    current: List[Message] = []
    for m in msgs:
        if m.get("role") == "assistant":
            if current:
                rounds.append(current)
            current = [m]
        else:
            current.append(m)
    if current:
        rounds.append(current)
    return rounds


__all__ = ["ContextFilterMiddleware", "DEFAULT_MAX_TOOL_OUTPUT", "DEFAULT_SLIDING_WINDOW"]
