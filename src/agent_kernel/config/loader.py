"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）；内置 `assets/default.yaml` 永远作为 base；
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from agent_kernel.agents.orchestrator import OrchestratorConfig
from agent_kernel.config.defaults import load_default_config_dict
from agent_kernel.core.contracts import Tier


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class RunSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_iterations: int = Field(default=20, ge=0)
    tier: Tier = "medium"
    enable_escalation: bool = True
    report_tool_name: str = "report"
    loop_window: int = Field(default=6, ge=2)
    temperature: Optional[float] = None

    @model_validator(mode="after")
    def _check_loop_window(self) -> "RunSection":
        if self.loop_window % 2 != 0:
            raise ValueError("run.loop_window must be an even number")
        return self


class BudgetSection(BaseModel):
    """
    预算配置。

    字段：
    - token_budget / hard_token_limit / iteration_budget：0 表示不限制
    - soft_limit_ratio / hard_limit_ratio：相对 token_budget 的阈值比例
    - stall_threshold：连续无进展迭代数阈值（0 表示不检测）
    - hard_stop / force_synthesis_on_hard_limit：BudgetMiddleware 策略
    """

    model_config = ConfigDict(extra="forbid")

    token_budget: int = Field(default=0, ge=0)
    hard_token_limit: int = Field(default=0, ge=0)
    iteration_budget: int = Field(default=0, ge=0)
    soft_limit_ratio: float = Field(default=0.8, gt=0.0, le=1.0)
    hard_limit_ratio: float = Field(default=0.95, gt=0.0, le=1.0)
    stall_threshold: int = Field(default=0, ge=0)
    hard_stop: bool = True
    force_synthesis_on_hard_limit: bool = True

    @model_validator(mode="after")
    def _check_ratios(self) -> "BudgetSection":
        if self.soft_limit_ratio > self.hard_limit_ratio:
            raise ValueError("budget.soft_limit_ratio must be <= budget.hard_limit_ratio")
        return self


class ContextFilterSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    sliding_window_size: int = Field(default=10, ge=1)
    max_output_length: int = Field(default=8000, ge=1)


class MiddlewareSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_timeout_ms: int = Field(default=5000, ge=0)
    context_filter: ContextFilterSection = Field(default_factory=ContextFilterSection)


class ToolsSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    truncation_max_chars: int = Field(default=20000, ge=1)


class KernelConfig(BaseModel):
    """内核配置（根）。"""

    model_config = ConfigDict(extra="forbid")

    config_version: Literal[1] = 1
    run: RunSection = Field(default_factory=RunSection)
    budget: BudgetSection = Field(default_factory=BudgetSection)
    middleware: MiddlewareSection = Field(default_factory=MiddlewareSection)
    tools: ToolsSection = Field(default_factory=ToolsSection)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]], *, include_defaults: bool = True) -> KernelConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `KernelConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    - include_defaults：是否以内置默认配置作为 base

    异常：
    - pydantic.ValidationError：未知字段或取值非法
    """

    merged: Dict[str, Any] = load_default_config_dict() if include_defaults else {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return KernelConfig.model_validate(merged)


def load_config(config_paths: list[Path]) -> KernelConfig:
    """
    加载并合并多个配置文件，返回校验后的 `KernelConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    overlays: list[Dict[str, Any]] = []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)


__all__ = [
    "BudgetSection",
    "ContextFilterSection",
    "KernelConfig",
    "MiddlewareSection",
    "RunSection",
    "ToolsSection",
    "load_config",
    "load_config_dicts",
]
