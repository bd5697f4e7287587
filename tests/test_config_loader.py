from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from agent_kernel.config import load_config, load_config_dicts
from agent_kernel.config.defaults import load_default_config_dict


def test_defaults_load_from_packaged_yaml() -> None:
    raw = load_default_config_dict()
    assert raw["config_version"] == 1

    cfg = load_config_dicts([])
    assert cfg.run.max_iterations == 20
    assert cfg.run.tier == "medium"
    assert cfg.run.loop_window == 6
    assert cfg.middleware.context_filter.sliding_window_size == 10
    assert cfg.tools.truncation_max_chars == 20000
    assert cfg.orchestrator.executor.max_concurrent == 5
    assert cfg.orchestrator.strategy == "sequential"


def test_yaml_overlays_deep_merge_in_order(tmp_path: Path) -> None:
    first = tmp_path / "a.yaml"
    first.write_text("run:\n  max_iterations: 7\n  tier: small\nbudget:\n  token_budget: 5000\n", encoding="utf-8")
    second = tmp_path / "b.yaml"
    second.write_text(
        "run:\n  tier: large\norchestrator:\n  executor:\n    max_concurrent: 2\n", encoding="utf-8"
    )

    cfg = load_config([first, second])
    assert cfg.run.max_iterations == 7
    assert cfg.run.tier == "large"
    assert cfg.budget.token_budget == 5000
    assert cfg.orchestrator.executor.max_concurrent == 2
    # 未覆盖的嵌套字段保持默认
    assert cfg.orchestrator.executor.max_queue_size == 20


def test_empty_yaml_file_is_ignored(tmp_path: Path) -> None:
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert load_config([empty]).run.max_iterations == 20


def test_unknown_fields_and_bad_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        load_config_dicts([{"run": {"max_steps": 3}}])
    with pytest.raises(ValidationError):
        load_config_dicts([{"run": {"loop_window": 5}}])
    with pytest.raises(ValidationError):
        load_config_dicts([{"budget": {"soft_limit_ratio": 0.9, "hard_limit_ratio": 0.5}}])
    with pytest.raises(ValidationError):
        load_config_dicts([{"config_version": 2}])


def test_non_mapping_root_and_missing_file(tmp_path: Path) -> None:
    bad = tmp_path / "list.yaml"
    bad.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config([bad])
    with pytest.raises(FileNotFoundError):
        load_config([tmp_path / "missing.yaml"])


def test_without_defaults_uses_model_defaults() -> None:
    cfg = load_config_dicts([{"run": {"max_iterations": 3}}], include_defaults=False)
    assert cfg.run.max_iterations == 3
    assert cfg.budget.hard_stop is True
