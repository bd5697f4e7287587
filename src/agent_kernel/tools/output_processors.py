"""
OutputProcessor：工具输出进入上下文前的文本变换。

说明：
- `OutputProcessorPipeline` 顺序串联处理器（每个处理器看到上一个的输出），不是扇出；
- 处理器可以是同步或协程实现。
"""

from __future__ import annotations

import inspect
from typing import Awaitable, List, Protocol, Sequence, Union

from agent_kernel.core.contracts import ToolExecCtx

DEFAULT_MAX_OUTPUT_CHARS = 20000


class OutputProcessor(Protocol):
    name: str

    def process(self, output: str, ctx: ToolExecCtx) -> Union[str, Awaitable[str]]:
        ...


class OutputProcessorPipeline:
    """按注册顺序串联执行处理器。"""

    def __init__(self, processors: Sequence[OutputProcessor] = ()) -> None:
        self._processors: List[OutputProcessor] = list(processors)

    @property
    def processors(self) -> List[OutputProcessor]:
        return list(self._processors)

    def add(self, processor: OutputProcessor) -> None:
        self._processors.append(processor)

    async def process(self, output: str, ctx: ToolExecCtx) -> str:
        current = output
        for processor in self._processors:
            out = processor.process(current, ctx)
            if inspect.isawaitable(out):
                out = await out
            current = str(out)
        return current


class TruncationProcessor:
    """
    硬截断：超过 max_chars 的输出只保留前 max_chars 个字符，并追加被截掉的字符数说明。

    异常：
    - ValueError：max_chars <= 0
    """

    name = "truncation"

    def __init__(self, max_chars: int = DEFAULT_MAX_OUTPUT_CHARS) -> None:
        if int(max_chars) <= 0:
            raise ValueError("max_chars must be positive")
        self.max_chars = int(max_chars)

    def process(self, output: str, ctx: ToolExecCtx) -> str:
        if len(output) <= self.max_chars:
            return output
        remaining = len(output) - self.max_chars
        return (
            output[: self.max_chars]
            + f"\n\n[Output truncated: {remaining} additional characters not shown. "
            "Use a more targeted query to see the full content.]"
        )


__all__ = ["DEFAULT_MAX_OUTPUT_CHARS", "OutputProcessor", "OutputProcessorPipeline", "TruncationProcessor"]
