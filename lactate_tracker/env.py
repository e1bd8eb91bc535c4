from __future__ import annotations

import os
from typing import Any

PRIMARY_PREFIX = "LACTATE_TRACKER_"
TRUTHY_VALUES = frozenset({"1", "true", "yes", "on"})


def get_env(name: str, default: str | None = None) -> str | None:
    """Resolve a `LACTATE_TRACKER_`-prefixed configuration environment variable."""
    value = os.getenv(f"{PRIMARY_PREFIX}{name}")
    if value is not None:
        return value
    return default


def parse_flag(value: Any) -> bool:
    """Read a switch from a bool or a `1`/`true`/`yes`/`on` string; anything else is off."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_VALUES
    return False


def get_flag(name: str, default: bool = False) -> bool:
    """Interpret an environment variable as a boolean switch."""
    value = get_env(name)
    if value is None:
        return default
    return parse_flag(value)
