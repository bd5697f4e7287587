"""
LoopDetector：基于滑动窗口的重复工具调用检测。

规则：
- 每一轮（一次模型响应中的整批工具调用）生成一个签名：`name:json(input)`，以 `|` 连接；
- 窗口保留最近 `window` 个签名；窗口填满后，比较“最新一半”与“前一半”（各自以 `>>>` 连接）；
- 两半完全相同即视为重复模式。
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Sequence

from agent_kernel.core.contracts import ToolCallInput
from agent_kernel.core.utils import stable_json

DEFAULT_LOOP_WINDOW = 6


def batch_signature(calls: Sequence[ToolCallInput]) -> str:
    """计算一批工具调用的签名。"""

    return "|".join(f"{c.name}:{stable_json(c.input)}" for c in calls)


class LoopDetector:
    """滑动窗口 loop 检测器（每个 run 一个实例）。"""

    def __init__(self, window: int = DEFAULT_LOOP_WINDOW) -> None:
        """
        参数：
        - window：窗口大小（必须为 >= 2 的偶数）
        """

        if window < 2 or window % 2 != 0:
            raise ValueError("loop detector window must be an even number >= 2")
        self.window = int(window)
        self._signatures: Deque[str] = deque(maxlen=self.window)

    def record(self, calls: Sequence[ToolCallInput]) -> bool:
        """
        记录一轮调用并返回是否检测到重复。

        返回：
        - True：窗口已满且最新一半与前一半完全一致
        """

        self._signatures.append(batch_signature(calls))
        if len(self._signatures) < self.window:
            return False
        half = self.window // 2
        items = list(self._signatures)
        return ">>>".join(items[half:]) == ">>>".join(items[:half])

    def reset(self) -> None:
        self._signatures.clear()


__all__ = ["DEFAULT_LOOP_WINDOW", "LoopDetector", "batch_signature"]
