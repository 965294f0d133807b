"""Environment variable helpers."""

from __future__ import annotations

import os
from typing import Iterable, Optional

from core.logging import get_logger

logger = get_logger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}
_DEVELOPMENT_ENVS = {"development", "dev", "local", "test"}


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key, default)
    if value is None:
        logger.debug("Environment variable %s not set. Using default=%s.", key, default)
    return value


def env_int(key: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        value = int(raw)
        if minimum is not None and value < minimum:
            raise ValueError
        return value
    except ValueError:
        logger.warning("Invalid %s value '%s'. Falling back to %d.", key, raw, default)
        return default


def env_float(
    key: str,
    default: float,
    *,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
) -> float:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        value = float(raw)
        if minimum is not None and value < minimum:
            raise ValueError
        if maximum is not None and value > maximum:
            raise ValueError
        return value
    except ValueError:
        logger.warning("Invalid %s value '%s'. Falling back to %.2f.", key, raw, default)
        return default


def env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    logger.warning("Invalid boolean env %s='%s'. Using default=%s.", key, raw, default)
    return default


def env_choice(key: str, default: str, choices: Iterable[str]) -> str:
    """Return the lower-cased value of ``key`` when it is one of ``choices``."""
    allowed = {choice.lower() for choice in choices}
    raw = os.getenv(key)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in allowed:
        return normalized
    logger.warning("Unsupported %s value '%s'. Using default=%s.", key, raw, default)
    return default


def is_development_env() -> bool:
    """Administrative endpoints are only exposed in development-like environments."""
    return (os.getenv("APP_ENV") or "production").strip().lower() in _DEVELOPMENT_ENVS


__all__ = ["env_bool", "env_choice", "env_float", "env_int", "env_str", "is_development_env"]
