"""Config loader utilities for pipeline runs."""

from __future__ import annotations

import importlib.util
import json
from copy import deepcopy
from pathlib import Path
from typing import Any

DEFAULT_RUN_CONFIG: dict[str, Any] = {
    "alternatives": {},
    "output_prefix": "",
    "n_jobs": None,
    "save_end_results": True,
    "debug": False,
    "backend": "loky",
    "comb": None,
}

_BACKENDS = {"loky", "threading", "multiprocessing"}


def deep_merge(defaults: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge overrides onto defaults."""
    merged = deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def _parse_yaml(text: str) -> Any:
    import yaml

    return yaml.safe_load(text) or {}


def _read_run_file(config_path: Path) -> Any:
    text = config_path.read_text(encoding="utf-8")
    suffix = config_path.suffix.lower()
    yaml_available = importlib.util.find_spec("yaml") is not None
    if suffix == ".json":
        return json.loads(text)
    if suffix in {".yaml", ".yml"} and not yaml_available:
        raise RuntimeError(f"Reading {config_path.name} needs PyYAML; install the `yaml` extra or use JSON.")
    # other suffixes: YAML when installed, else JSON
    return _parse_yaml(text) if yaml_available else json.loads(text)


def load_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML or JSON run config, merge it onto the defaults and validate it."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    data = _read_run_file(config_path)
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping.")

    config = deep_merge(DEFAULT_RUN_CONFIG, data)
    _validate_config(config)
    return config


def _validate_config(config: dict[str, Any]) -> None:
    unknown = sorted(set(config) - set(DEFAULT_RUN_CONFIG))
    if unknown:
        raise ValueError(f"Unknown config keys: {unknown}")

    alternatives = config.get("alternatives")
    if not isinstance(alternatives, dict):
        raise ValueError("alternatives must be a mapping.")
    for name, values in alternatives.items():
        if isinstance(values, list) and not values:
            raise ValueError(f"alternatives.{name} must contain at least one option.")
        if isinstance(values, dict):
            raise ValueError(f"alternatives.{name} must be a value or a list of values.")

    output_prefix = config.get("output_prefix")
    if not isinstance(output_prefix, str):
        raise ValueError("output_prefix must be a string.")

    n_jobs = config.get("n_jobs")
    if n_jobs is not None:
        _validate_positive_int(config, "n_jobs")

    _validate_bool(config, "save_end_results")
    _validate_bool(config, "debug")

    backend = config.get("backend")
    if backend not in _BACKENDS:
        raise ValueError(f"backend must be one of: {', '.join(sorted(_BACKENDS))}")

    comb = config.get("comb")
    if comb is not None:
        if not isinstance(comb, list) or not comb:
            raise ValueError("comb must be a non-empty list of index rows.")
        for row in comb:
            if not isinstance(row, list) or not all(
                isinstance(value, int) and not isinstance(value, bool) and value > 0 for value in row
            ):
                raise ValueError("comb rows must be lists of positive integers.")


def _validate_positive_int(data: dict[str, Any], key: str) -> None:
    if key not in data:
        return
    value = data[key]
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"{key} must be an integer.")
    if value <= 0:
        raise ValueError(f"{key} must be > 0.")


def _validate_bool(data: dict[str, Any], key: str) -> None:
    if key not in data:
        return
    value = data[key]
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be boolean.")


__all__ = ["DEFAULT_RUN_CONFIG", "deep_merge", "load_config"]
