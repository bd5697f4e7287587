"""
RunContext：单次 run 的共享可变状态容器。

约束：
- 消息历史只能经由 `append_message` 追加（单一 choke point）；对外只暴露只读 tuple 视图；
- `meta` 是 middleware 与 loop 之间唯一被认可的共享可变状态，按 namespace 隔离 key。
"""

from __future__ import annotations

import uuid
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from agent_kernel.core.cancellation import CancellationToken
from agent_kernel.core.contracts import Message, Tier, ToolDefinition


class ContextMeta:
    """
    命名空间化的 `(namespace, key) -> value` 侧通道。

    示例：
    - `meta.set("budget", "exhausted", True)`
    - `meta.get("loop", "totalTokens", 0)`
    """

    def __init__(self) -> None:
        """创建空的 meta 容器。"""

        self._data: Dict[str, Dict[str, Any]] = {}

    def get(self, namespace: str, key: str, default: Any = None) -> Any:
        """读取值；不存在时返回 default。"""

        return self._data.get(namespace, {}).get(key, default)

    def set(self, namespace: str, key: str, value: Any) -> None:
        """写入值（覆盖同 namespace 下的同名 key）。"""

        self._data.setdefault(namespace, {})[key] = value

    def has(self, namespace: str, key: str) -> bool:
        """判断 key 是否存在。"""

        return key in self._data.get(namespace, {})

    def get_namespace(self, namespace: str) -> Dict[str, Any]:
        """返回某个 namespace 的浅拷贝（修改它不会影响 meta）。"""

        return dict(self._data.get(namespace, {}))


@dataclass
class RunContext:
    """
    单次 run（或单个子 agent run）的可变状态。

    字段：
    - task：任务文本
    - tier：当前模型档位（small|medium|large）
    - tools：模型可见的工具定义
    - iteration / max_iterations：迭代计数（iteration 从 1 开始计）
    - abort：取消信号（父 run 取消会级联到此）
    - request_id / session_id / agent_id / parent_agent_id：标识
    - deadline_ms：可选；仅供 middleware/host 参考，loop 本身不看墙钟
    - meta：命名空间化侧通道
    """

    task: str
    tier: Tier
    max_iterations: int
    tools: List[ToolDefinition] = field(default_factory=list)
    abort: CancellationToken = field(default_factory=CancellationToken)
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    agent_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    parent_agent_id: Optional[str] = None
    session_id: Optional[str] = None
    deadline_ms: Optional[int] = None
    iteration: int = 0
    meta: ContextMeta = field(default_factory=ContextMeta)
    _messages: List[Message] = field(default_factory=list, repr=False)
    _aborted: bool = field(default=False, repr=False)

    @property
    def messages(self) -> Tuple[Message, ...]:
        """只读消息视图（每条消息为拷贝，调用方修改不会回写历史）。"""

        return tuple(deepcopy(m) for m in self._messages)

    @property
    def message_count(self) -> int:
        """消息条数（无需复制历史）。"""

        return len(self._messages)

    @property
    def aborted(self) -> bool:
        """取消信号已触发，或 run 被外部标记为 aborted。"""

        return self._aborted or self.abort.cancelled

    def mark_aborted(self) -> None:
        """外部标记 run 为 aborted（不触发 token，下一轮迭代开头生效）。"""

        self._aborted = True

    def append_message(self, message: Message) -> None:
        """
        追加一条消息（唯一的历史写入口）。

        异常：
        - ValueError：缺少 role
        """

        if not isinstance(message, dict) or not message.get("role"):
            raise ValueError("message must be a dict with a non-empty 'role'")
        self._messages.append(deepcopy(message))

    def extend_messages(self, messages: Iterable[Message]) -> None:
        """批量追加（逐条经过 `append_message`）。"""

        for m in messages:
            self.append_message(m)


def create_run_context(
    *,
    task: str,
    tier: Tier,
    max_iterations: int,
    tools: Optional[List[ToolDefinition]] = None,
    abort: Optional[CancellationToken] = None,
    request_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    parent_agent_id: Optional[str] = None,
    session_id: Optional[str] = None,
    deadline_ms: Optional[int] = None,
    initial_messages: Optional[Iterable[Message]] = None,
) -> RunContext:
    """
    构造 RunContext（每个 run / 子 run 一次）。

    参数：
    - initial_messages：可选；初始 system/user 消息（经由 append_message 写入）
    - 其余参数见 `RunContext` 字段说明；缺省 id 自动生成
    """

    run = RunContext(
        task=task,
        tier=tier,
        max_iterations=int(max_iterations),
        tools=list(tools or []),
        abort=abort or CancellationToken(),
        request_id=request_id or uuid.uuid4().hex,
        agent_id=agent_id or uuid.uuid4().hex,
        parent_agent_id=parent_agent_id,
        session_id=session_id,
        deadline_ms=deadline_ms,
    )
    if initial_messages:
        run.extend_messages(initial_messages)
    return run


__all__ = ["ContextMeta", "RunContext", "create_run_context"]
