from __future__ import annotations

import os

_TRUTHY_VALUES = {"1", "true", "t", "yes", "y", "on", "enabled", "enable"}
_FALSY_VALUES = {"0", "false", "f", "no", "n", "off", "disabled", "disable"}


def truthy(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in _TRUTHY_VALUES


def truthy_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in _TRUTHY_VALUES:
        return True
    if lowered in _FALSY_VALUES:
        return False
    return default


def str_env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()
