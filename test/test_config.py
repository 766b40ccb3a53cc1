"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
from config import DEFAULTS, ConfigError, load_config, load_script


def test_defaults() -> None:
    cfg = load_config(None)
    assert cfg == DEFAULTS
    assert cfg is not DEFAULTS
    assert cfg["rewind"] is True


def test_dict_overlay_and_coercion() -> None:
    cfg = load_config({"rewind": 0, "tick_limit": "50", "script": ("a", "b")})
    assert cfg["rewind"] is False
    assert cfg["tick_limit"] == 50
    assert cfg["script"] == ["a", "b"]
    # normalized configs load again unchanged
    assert load_config(cfg) == cfg


def test_yaml_file(tmp_path: Path) -> None:
    p = tmp_path / "vm.yaml"
    p.write_text("rewind: false\nhistory_limit: 3\ntrace: true\n", encoding="utf-8")
    cfg = load_config(str(p))
    assert cfg["rewind"] is False
    assert cfg["history_limit"] == 3
    assert cfg["trace"] is True


@pytest.mark.parametrize(
    "bad",
    [
        {"history_limit": 0},
        {"tick_limit": -1},
        {"tick_limit": "many"},
        {"script": 12},
        {"mem_cells": 100},
    ],
)
def test_invalid_values(bad: dict) -> None:
    with pytest.raises(ConfigError):
        load_config(bad)


def test_missing_or_non_mapping_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "nope.yaml"))
    p = tmp_path / "list.yaml"
    p.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(p))


def test_load_script(tmp_path: Path) -> None:
    p = tmp_path / "start-script"
    p.write_text("take tablet\n\nuse tablet\n", encoding="utf-8")
    assert load_script(str(p)) == ["take tablet", "", "use tablet"]
    assert load_script(["x"]) == ["x"]
    assert load_script(None) == []
    with pytest.raises(ConfigError):
        load_script(str(tmp_path / "missing"))
