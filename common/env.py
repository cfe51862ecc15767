"""
Environment-variable parsing shared by the client and server configs.

Every option is read from ``SPEEDCHECK_<NAME>``.  Malformed values raise
:class:`ConfigurationError`, which is fatal at startup.
"""
from __future__ import annotations

import os
from typing import Dict, List, Mapping, Optional

ENV_PREFIX = "SPEEDCHECK_"


class ConfigurationError(ValueError):
    """Invalid configuration; not recoverable per request."""


def env_name(key: str) -> str:
    return ENV_PREFIX + key.upper()


def _raw(key: str, environ: Optional[Mapping[str, str]]) -> Optional[str]:
    value = (environ if environ is not None else os.environ).get(env_name(key))
    if value is None or not value.strip():
        return None
    return value.strip()


def env_str(key: str, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    return _raw(key, environ)


def env_int(key: str, environ: Optional[Mapping[str, str]] = None) -> Optional[int]:
    raw = _raw(key, environ)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{env_name(key)} must be an integer, got {raw!r}") from None


def env_float(key: str, environ: Optional[Mapping[str, str]] = None) -> Optional[float]:
    raw = _raw(key, environ)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{env_name(key)} must be a number, got {raw!r}") from None


def env_list(key: str, environ: Optional[Mapping[str, str]] = None) -> Optional[List[str]]:
    raw = _raw(key, environ)
    if raw is None:
        return None
    return [item.strip() for item in raw.split(",") if item.strip()]


def env_int_list(key: str, environ: Optional[Mapping[str, str]] = None) -> Optional[List[int]]:
    items = env_list(key, environ)
    if items is None:
        return None
    try:
        return [int(float(item)) for item in items]
    except ValueError:
        raise ConfigurationError(f"{env_name(key)} must be a comma-separated list of sizes") from None


def collect_overrides(
    schema: Dict[str, object],
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, object]:
    """Read every key of *schema* from the environment, skipping unset ones."""
    readers = {
        int: env_int,
        float: env_float,
        str: env_str,
        list: env_list,
        "sizes": env_int_list,
    }
    overrides: Dict[str, object] = {}
    for key, kind in schema.items():
        value = readers[kind](key, environ)
        if value is not None:
            overrides[key] = value
    return overrides
