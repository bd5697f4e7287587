"""
Guard 协议与 GuardPipeline。

guard 包裹工具调用的输入/输出，独立于工具自身逻辑：
- validate_input：可拒绝调用（工具不会被执行）
- validate_output：可拒绝或改写（sanitize）输出文本

语义：
- 输入校验按注册顺序执行，第一个 reject 立即返回；
- 输出校验按注册顺序执行，sanitize 的结果作为下一个 guard 的输入（链式），reject 立即返回。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from agent_kernel.core.contracts import ToolExecCtx


class GuardAction(str, Enum):
    ALLOW = "allow"
    REJECT = "reject"
    SANITIZE = "sanitize"


@dataclass(frozen=True)
class GuardResult:
    """
    单个 guard 的校验结果。

    字段：
    - action：allow / reject / sanitize
    - reason：拒绝或改写原因（回注给模型，不得包含敏感值）
    - sanitized：action 为 sanitize 时的替换文本
    - guard：产出该结果的 guard 名称（由 pipeline 填充）
    """

    action: GuardAction = GuardAction.ALLOW
    reason: Optional[str] = None
    sanitized: Optional[str] = None
    guard: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.action is GuardAction.ALLOW

    @classmethod
    def allow(cls) -> "GuardResult":
        return cls()

    @classmethod
    def reject(cls, reason: str) -> "GuardResult":
        return cls(action=GuardAction.REJECT, reason=reason)

    @classmethod
    def sanitize(cls, sanitized: str, reason: str) -> "GuardResult":
        return cls(action=GuardAction.SANITIZE, reason=reason, sanitized=sanitized)


class ToolGuard:
    """
    guard 基类（默认放行）。

    子类覆盖 `validate_input` / `validate_output` 之一或两者。
    """

    name: str = "guard"

    def validate_input(self, tool_name: str, input: Dict[str, Any], ctx: ToolExecCtx) -> GuardResult:
        return GuardResult.allow()

    def validate_output(self, tool_name: str, output: str, ctx: ToolExecCtx) -> GuardResult:
        return GuardResult.allow()


@dataclass(frozen=True)
class OutputVerdict:
    """输出校验的汇总结果：被拒绝时带 guard 与原因；否则为（可能已改写的）最终文本。"""

    output: str
    rejected: Optional[GuardResult] = None


class GuardPipeline:
    """按注册顺序执行 guard。"""

    def __init__(self, guards: Sequence[ToolGuard] = ()) -> None:
        self._guards: List[ToolGuard] = list(guards)

    @property
    def guards(self) -> List[ToolGuard]:
        return list(self._guards)

    def add(self, guard: ToolGuard) -> None:
        self._guards.append(guard)

    def validate_input(self, tool_name: str, input: Dict[str, Any], ctx: ToolExecCtx) -> GuardResult:
        """返回第一个 reject（带 guard 名称）；全部放行时返回 allow。"""

        for guard in self._guards:
            result = guard.validate_input(tool_name, input, ctx)
            if result.action is GuardAction.REJECT:
                return GuardResult(action=result.action, reason=result.reason, guard=guard.name)
        return GuardResult.allow()

    def validate_output(self, tool_name: str, output: str, ctx: ToolExecCtx) -> OutputVerdict:
        """链式执行输出校验：sanitize 改写文本并继续，reject 立即返回。"""

        current = output
        for guard in self._guards:
            result = guard.validate_output(tool_name, current, ctx)
            if result.action is GuardAction.REJECT:
                rejected = GuardResult(action=result.action, reason=result.reason, guard=guard.name)
                return OutputVerdict(output=current, rejected=rejected)
            if result.action is GuardAction.SANITIZE and result.sanitized is not None:
                current = result.sanitized
        return OutputVerdict(output=current)


__all__ = ["GuardAction", "GuardPipeline", "GuardResult", "OutputVerdict", "ToolGuard"]
