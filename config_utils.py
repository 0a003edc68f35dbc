from __future__ import annotations

import os
from typing import Iterable, Optional


def read_str_env(name: str, default: str) -> str:
    raw = (os.getenv(name) or "").strip()
    return raw or default


def read_optional_str_env(name: str) -> Optional[str]:
    raw = (os.getenv(name) or "").strip()
    return raw or None


def read_choice_env(name: str, default: str, choices: Iterable[str]) -> str:
    raw = (os.getenv(name) or "").strip().lower()
    allowed = {choice.lower() for choice in choices}
    return raw if raw in allowed else default


def read_float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def read_ratio_env(name: str, default: float) -> float:
    """Volume-style value in [0, 1]; zero is a valid setting here."""
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if 0.0 <= value <= 1.0 else default


def read_int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def read_bool_env(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return default
