"""
AgentRegistry：agent 类型预设目录（纯数据，不实例化 agent）。

说明：
- 注册表由宿主显式构造并注入 orchestrator；不存在模块级全局实例；
- `create_default_registry()` 每次返回一个装好内置预设的新实例（测试可以自由替换）。
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from agent_kernel.core.errors import UserError

DEFAULT_FEATURE_FLAGS: Mapping[str, bool] = {
    "twoTierMemory": False,
    "todoSync": False,
    "searchSignal": False,
    "reflection": False,
    "taskClassifier": False,
    "smartSummarizer": False,
    "tierEscalation": False,
}


class AgentTypeDefinition(BaseModel):
    """
    agent 类型定义。

    字段：
    - tool_packs：允许加载的工具包 id（`core` / `coder` / `kb-labs` / 自定义）
    - feature_flags：叠加在 DEFAULT_FEATURE_FLAGS 之上的开关
    - system_prompt_suffix：追加到基础 system prompt 之后
    - max_iterations：默认迭代上限（派生时可覆盖）
    - read_only：True 时只注册只读工具
    - max_depth：可继续派生的层数；0 表示不能派生
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    label: str = ""
    description: str = ""
    tool_packs: List[str] = Field(default_factory=list)
    feature_flags: Dict[str, bool] = Field(default_factory=dict)
    system_prompt_suffix: Optional[str] = None
    max_iterations: int = Field(default=10, ge=0)
    read_only: bool = True
    max_depth: int = Field(default=0, ge=0)


PRESETS: List[AgentTypeDefinition] = [
    AgentTypeDefinition(
        id="researcher",
        label="Researcher",
        description="Read-only agent specialised in codebase exploration and evidence gathering. Cannot modify files.",
        tool_packs=["core", "kb-labs"],
        feature_flags={"searchSignal": True, "taskClassifier": True},
        system_prompt_suffix=(
            "You are a researcher. Your goal is to gather evidence and report findings. "
            "Do NOT create or modify files."
        ),
        max_iterations=15,
        read_only=True,
        max_depth=0,
    ),
    AgentTypeDefinition(
        id="coder",
        label="Coder",
        description="Full-access agent for code generation, refactoring, and fixes. Has write and shell access.",
        tool_packs=["core", "coder", "kb-labs"],
        feature_flags={"todoSync": True, "reflection": True},
        system_prompt_suffix="You are a coder. Your goal is to implement changes correctly and efficiently.",
        max_iterations=20,
        read_only=False,
        max_depth=1,
    ),
    AgentTypeDefinition(
        id="reviewer",
        label="Reviewer",
        description="Read-only agent for code review, analysis, and quality assessment.",
        tool_packs=["core"],
        feature_flags={"searchSignal": True, "taskClassifier": True, "reflection": True},
        system_prompt_suffix=(
            "You are a code reviewer. Analyse code quality, identify bugs, and suggest improvements. "
            "Do NOT modify files."
        ),
        max_iterations=10,
        read_only=True,
        max_depth=0,
    ),
    AgentTypeDefinition(
        id="orchestrator",
        label="Orchestrator",
        description="Meta-agent that decomposes complex tasks and delegates to specialised sub-agents.",
        tool_packs=["core", "kb-labs"],
        feature_flags={"tierEscalation": True, "taskClassifier": True},
        system_prompt_suffix=(
            "You are an orchestrator. Break complex tasks into subtasks and delegate them to specialised agents."
        ),
        max_iterations=10,
        read_only=True,
        max_depth=3,
    ),
]


class AgentRegistry:
    """agent 类型目录（插入有序）。"""

    def __init__(self, definitions: Optional[List[AgentTypeDefinition]] = None) -> None:
        self._definitions: Dict[str, AgentTypeDefinition] = {}
        for d in definitions or []:
            self.register(d)

    def register(self, definition: AgentTypeDefinition) -> None:
        """
        注册或覆盖一个类型。

        异常：
        - UserError：id 为空
        """

        if not definition.id.strip():
            raise UserError("AgentTypeDefinition.id must be non-empty")
        self._definitions[definition.id] = definition

    def get(self, type_id: str) -> Optional[AgentTypeDefinition]:
        return self._definitions.get(type_id)

    def get_or_raise(self, type_id: str) -> AgentTypeDefinition:
        definition = self._definitions.get(type_id)
        if definition is None:
            raise UserError(
                f"Agent type '{type_id}' not found in registry. Available: {', '.join(self.list_ids())}"
            )
        return definition

    def has(self, type_id: str) -> bool:
        return type_id in self._definitions

    def list_ids(self) -> List[str]:
        return list(self._definitions)

    def list(self) -> List[AgentTypeDefinition]:
        return list(self._definitions.values())

    def resolve_feature_flags(self, type_id: str, base: Optional[Mapping[str, bool]] = None) -> Dict[str, bool]:
        """合并开关：base（缺省 DEFAULT_FEATURE_FLAGS）+ 类型覆盖；未知类型只返回 base。"""

        flags = dict(DEFAULT_FEATURE_FLAGS if base is None else base)
        definition = self.get(type_id)
        if definition is not None:
            flags.update(definition.feature_flags)
        return flags


def create_default_registry() -> AgentRegistry:
    """返回装好内置预设的新注册表。"""

    return AgentRegistry(list(PRESETS))


__all__ = ["AgentRegistry", "AgentTypeDefinition", "DEFAULT_FEATURE_FLAGS", "PRESETS", "create_default_registry"]
