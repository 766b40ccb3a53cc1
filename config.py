from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

"""Config loader and validator.

Provides `load_config` which accepts either a path to a YAML file,
a dictionary or None and returns a normalized configuration dict
using DEFAULTS for missing values.
"""


DEFAULTS: dict[str, Any] = {
    "rewind": True,
    "script": None,
    "echo_script": True,
    "history_limit": None,
    "tick_limit": None,
    "trace": False,
}


class ConfigError(ValueError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def _optional_int(cfg: dict[str, Any], key: str) -> None:
    v = cfg.get(key)
    cfg[key] = None if v is None else int(v)


def _convert_types(cfg: dict[str, Any]) -> None:
    """Normalize types for configuration values in-place.

    Raises ConfigError on conversion failure.
    """
    try:
        # bool coercion
        for key in ("rewind", "echo_script", "trace"):
            cfg[key] = bool(cfg.get(key, DEFAULTS[key]))

        _optional_int(cfg, "history_limit")
        _optional_int(cfg, "tick_limit")

        # script: path (str/Path), list of lines or None
        v = cfg.get("script")
        if isinstance(v, Path):
            cfg["script"] = str(v)
        elif isinstance(v, (list, tuple)):
            cfg["script"] = [str(line) for line in v]
    except Exception as e:
        msg = f"Bad types in config: {e}"
        raise ConfigError(msg) from e


def _validate_cfg(cfg: dict[str, Any]) -> None:
    """Perform semantic validation on normalized config dict.

    Raises ConfigError on invalid values.
    """
    if cfg["history_limit"] is not None and cfg["history_limit"] < 1:
        msg = "history_limit must be positive or null"
        raise ConfigError(msg)

    if cfg["tick_limit"] is not None and cfg["tick_limit"] < 0:
        msg = "tick_limit must be non-negative or null"
        raise ConfigError(msg)

    script = cfg["script"]
    if script is not None and not isinstance(script, (str, list)):
        msg = "script must be a path, a list of lines or null"
        raise ConfigError(msg)


def load_config(path_or_dict: str | dict[str, Any] | None = None) -> dict[str, Any]:
    """Load and normalize configuration.

    Accepts:
      - None -> returns DEFAULTS copy
      - dict -> overlay DEFAULTS with provided dict
      - str (path) -> load YAML and overlay DEFAULTS

    Returns a normalized dict or raises ConfigError.
    """
    if path_or_dict is None:
        cfg: dict[str, Any] = dict(DEFAULTS)
    elif isinstance(path_or_dict, dict):
        cfg = dict(DEFAULTS)
        cfg.update(path_or_dict)
    elif isinstance(path_or_dict, str):
        p = Path(path_or_dict)
        if not p.exists():
            msg = f"Config file not found: {path_or_dict}"
            raise ConfigError(msg)
        try:
            with p.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except Exception as e:
            msg = f"Failed to load config file {path_or_dict}: {e}"
            raise ConfigError(msg) from e
        if not isinstance(data, dict):
            msg = f"Config file {path_or_dict} does not contain a mapping"
            raise ConfigError(msg)
        cfg = dict(DEFAULTS)
        cfg.update(data)
    else:
        msg = "Unsupported config input"
        raise ConfigError(msg)

    unknown = sorted(set(cfg) - set(DEFAULTS))
    if unknown:
        msg = f"Unknown config keys: {', '.join(unknown)}"
        raise ConfigError(msg)

    # convert types and validate semantics
    _convert_types(cfg)
    _validate_cfg(cfg)

    return cfg


def load_script(source: str | list[str] | None) -> list[str]:
    """Return scripted command lines from a file path or a list.

    Blank lines are kept: each one stands for an empty input line.
    """
    if source is None:
        return []
    if isinstance(source, list):
        return list(source)
    p = Path(source)
    if not p.exists():
        msg = f"Script file not found: {source}"
        raise ConfigError(msg)
    return p.read_text(encoding="utf-8").splitlines()
