"""Packaged relay defaults and the overlay used to apply user YAML on top."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

DEFAULTS_FILE = Path(__file__).parent / "defaults" / "relay.yaml"


def load_defaults() -> dict[str, Any]:
    """Return a fresh copy of the packaged ``relay.yaml`` defaults."""
    if not DEFAULTS_FILE.is_file():
        msg = f"Packaged relay defaults missing at {DEFAULTS_FILE}"
        raise FileNotFoundError(msg)
    data = yaml.safe_load(DEFAULTS_FILE.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        msg = f"Relay defaults in {DEFAULTS_FILE} must be a mapping"
        raise TypeError(msg)
    return data


def merge_configs(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Overlay *overrides* section by section without mutating *base*.

    An empty section in the override file (``kafka:`` with nothing under it)
    keeps the defaults for that section.
    """
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict):
            if value is None:
                continue
            if isinstance(value, dict):
                merged[key] = merge_configs(current, value)
                continue
        merged[key] = value
    return merged
