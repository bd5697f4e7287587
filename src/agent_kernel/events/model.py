"""
AgentEvent：对外生命周期事件流条目。

说明：
- 事件只供外部协作者消费（tracing、进度推送、会话持久化），内核不依赖任何消费者；
- 事件对象应视为不可变：listener/bus 不得修改。
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from agent_kernel.core.utils import now_rfc3339


class EventType:
    """稳定事件类型常量。"""

    RUN_START = "run_start"
    RUN_END = "run_end"
    ITERATION_START = "iteration_start"
    ITERATION_END = "iteration_end"
    LLM_START = "llm_start"
    LLM_END = "llm_end"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    ESCALATE = "escalate"
    ABORT = "abort"
    SPAWN = "spawn"


class AgentEvent(BaseModel):
    """
    AgentEvent：统一事件条目。

    字段：
    - type：事件类型（见 `EventType`）
    - timestamp：RFC3339 时间字符串
    - run_id：run 标识（RunContext.request_id）
    - agent_id / parent_agent_id / session_id：可选标识
    - iteration：可选；事件发生时的迭代号
    - payload：JSON object，承载事件专用字段
    """

    model_config = ConfigDict(extra="forbid")

    type: str
    timestamp: str = Field(default_factory=now_rfc3339)
    run_id: str
    agent_id: Optional[str] = None
    parent_agent_id: Optional[str] = None
    session_id: Optional[str] = None
    iteration: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        """序列化为 JSON 字符串。"""

        return self.model_dump_json(exclude_none=True)

    @classmethod
    def from_json(cls, raw_json: str) -> "AgentEvent":
        """从 JSON 字符串反序列化。"""

        return cls.model_validate_json(raw_json)


__all__ = ["AgentEvent", "EventType"]
