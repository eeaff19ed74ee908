"""YAML + environment variable config loader."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, cast

import yaml
from pydantic import ValidationError

from cdc_relay.config.defaults import load_defaults, merge_configs
from cdc_relay.config.models import RelayConfig

# ${VAR} or ${VAR:-default}; the default runs up to the first closing brace.
_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


def _substitute(match: re.Match[str]) -> str:
    name, default = match.group(1), match.group(2)
    value = os.environ.get(name, default)
    if value is None:
        msg = f"Environment variable '{name}' is not set and no default provided"
        raise ValueError(msg)
    return value


def resolve_env_vars(data: Any) -> Any:
    """Substitute ``${VAR}`` references in every string of parsed YAML data."""
    if isinstance(data, str):
        return _ENV_PATTERN.sub(_substitute, data)
    if isinstance(data, dict):
        return {key: resolve_env_vars(value) for key, value in data.items()}
    if isinstance(data, list):
        return [resolve_env_vars(item) for item in data]
    return data


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Read a relay override file; an empty file means no overrides."""
    p = Path(path)
    if not p.is_file():
        msg = f"Config file not found: {p}"
        raise FileNotFoundError(msg)
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        where = f" at line {mark.line + 1}, column {mark.column + 1}" if mark else ""
        msg = f"Failed to parse YAML in {p}{where}: {exc}"
        raise ValueError(msg) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping at top level in {p}, got {type(data).__name__}"
        raise TypeError(msg)
    return cast(dict[str, Any], resolve_env_vars(data))


def build_relay_config(overrides: dict[str, Any]) -> RelayConfig:
    """Validate *overrides* layered over the packaged defaults."""
    base = cast(dict[str, Any], resolve_env_vars(load_defaults()))
    return RelayConfig.model_validate(merge_configs(base, overrides))


def load_relay_config(path: str | Path | None = None) -> RelayConfig:
    """Load relay config from built-in defaults, optionally merged with a YAML file."""
    overrides = load_yaml(path) if path is not None else {}
    try:
        return build_relay_config(overrides)
    except ValidationError as exc:
        source = path or "built-in defaults"
        msg = f"Invalid relay config ({source}):\n{exc}"
        raise ValueError(msg) from exc
