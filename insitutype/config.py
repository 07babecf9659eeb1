"""Run configuration from JSON files and plain parameter mappings."""

from __future__ import annotations

import json
from dataclasses import fields
from pathlib import Path
from typing import Any, Mapping

from insitutype.core.types import InsitutypeConfig

SECTION = "insitutype"

_FIELD_TYPES = {f.name: str(f.type) for f in fields(InsitutypeConfig)}


def _coerce(key: str, value: Any) -> Any:
    kind = _FIELD_TYPES[key]
    if kind == "bool":
        if not isinstance(value, bool):
            raise ValueError(f"Config field '{key}' must be a boolean, got {value!r}.")
        return value
    if kind == "int":
        if isinstance(value, bool) or int(value) != value:
            raise ValueError(f"Config field '{key}' must be an integer, got {value!r}.")
        return int(value)
    if kind == "float":
        if isinstance(value, bool):
            raise ValueError(f"Config field '{key}' must be numeric, got {value!r}.")
        return float(value)
    return str(value)


def config_from_params(
    params: Mapping[str, Any] | None = None,
    base: InsitutypeConfig | None = None,
) -> InsitutypeConfig:
    """Build an `InsitutypeConfig` from a plain mapping of overrides."""
    cfg = base if base is not None else InsitutypeConfig()
    if not params:
        return cfg
    unknown = sorted(set(params) - set(_FIELD_TYPES))
    if unknown:
        raise ValueError(f"Unknown config field(s): {', '.join(unknown)}.")
    return cfg.with_overrides(**{k: _coerce(k, v) for k, v in params.items()})


def load_json_config(path: str | Path) -> dict[str, Any]:
    """Read the run parameters stored in a JSON file.

    The file holds either the parameters at top level or an object under an
    ``"insitutype"`` key, so a run can share one file with other tools.
    """
    config_path = Path(path)
    if config_path.suffix.lower() != ".json":
        raise ValueError(f"Config '{config_path}' is not a .json file.")
    try:
        text = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise FileNotFoundError(f"Config file not found: {config_path}") from None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{config_path}: invalid JSON at line {exc.lineno}, column {exc.colno} ({exc.msg}).") from exc

    if isinstance(data, dict) and isinstance(data.get(SECTION), dict):
        data = data[SECTION]
    if not isinstance(data, dict):
        raise ValueError(f"{config_path}: expected a JSON object of parameters, got {type(data).__name__}.")
    return data


def resolve_config(
    config: InsitutypeConfig | str | Path | None,
    params: Mapping[str, Any] | None = None,
) -> InsitutypeConfig:
    """Turn a config object or JSON path plus ``params`` overrides into one config."""
    if isinstance(config, (str, Path)):
        config = config_from_params(load_json_config(config))
    return config_from_params(params, base=config)
