"""
Client configuration.

Values are layered: built-in defaults, then ``~/.speedcheck/config.json``,
then ``SPEEDCHECK_*`` environment variables.

Supported keys::

    server_url = "http://127.0.0.1:8080"
    timeout_ms = 30000            # bulk transfer attempt timeout
    ping_timeout_ms = 3000        # ping / jitter request timeout
    ping_servers = [...]          # external ping targets
    ping_measurements = 10
    jitter_measurements = 20
    ping_delay_ms = 100
    jitter_delay_ms = 50
    download_sizes = [...]        # bytes, ascending
    upload_sizes = [...]
    min_ping_ms = 1.0             # outlier bounds
    max_ping_ms = 1000.0
    overhead_compensation = 1.0
    deadline_s = 120.0            # whole-run budget, 0 disables
    history_limit = 50            # for the history collaborator only
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from common.env import ConfigurationError, collect_overrides

from .constants import (
    DEFAULT_DEADLINE_S,
    DEFAULT_DOWNLOAD_SIZES,
    DEFAULT_JITTER_COUNT,
    DEFAULT_PING_COUNT,
    DEFAULT_PING_SERVERS,
    DEFAULT_PING_TIMEOUT_MS,
    DEFAULT_SERVER_URL,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_UPLOAD_SIZES,
    JITTER_DELAY_MS,
    MAX_PING_COUNT,
    MAX_PING_MS,
    MIN_PING_COUNT,
    MIN_PING_MS,
    PING_DELAY_MS,
)

__all__ = [
    "ConfigurationError",
    "DEFAULTS",
    "SpeedTestConfig",
    "config_path",
    "get_config_value",
    "load_config",
    "save_config",
    "set_config_value",
]

LOGGER = logging.getLogger(__name__)

_CONFIG_DIR = os.path.join(Path.home(), ".speedcheck")
_CONFIG_FILE = "config.json"

_ENV_SCHEMA = {
    "server_url": str,
    "timeout_ms": int,
    "ping_timeout_ms": int,
    "ping_servers": list,
    "ping_measurements": int,
    "jitter_measurements": int,
    "ping_delay_ms": int,
    "jitter_delay_ms": int,
    "download_sizes": "sizes",
    "upload_sizes": "sizes",
    "min_ping_ms": float,
    "max_ping_ms": float,
    "overhead_compensation": float,
    "deadline_s": float,
    "history_limit": int,
}


def _config_path() -> str:
    return os.path.join(_CONFIG_DIR, _CONFIG_FILE)


# ---------------------------------------------------------------------------
# Typed config
# ---------------------------------------------------------------------------

@dataclass
class SpeedTestConfig:
    server_url: str = DEFAULT_SERVER_URL
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    ping_timeout_ms: int = DEFAULT_PING_TIMEOUT_MS
    ping_servers: List[str] = field(default_factory=lambda: list(DEFAULT_PING_SERVERS))
    ping_measurements: int = DEFAULT_PING_COUNT
    jitter_measurements: int = DEFAULT_JITTER_COUNT
    ping_delay_ms: int = PING_DELAY_MS
    jitter_delay_ms: int = JITTER_DELAY_MS
    download_sizes: List[int] = field(default_factory=lambda: list(DEFAULT_DOWNLOAD_SIZES))
    upload_sizes: List[int] = field(default_factory=lambda: list(DEFAULT_UPLOAD_SIZES))
    min_ping_ms: float = MIN_PING_MS
    max_ping_ms: float = MAX_PING_MS
    overhead_compensation: float = 1.0
    deadline_s: float = DEFAULT_DEADLINE_S
    history_limit: int = 50

    # -- Derived ------------------------------------------------------------

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000

    @property
    def ping_timeout(self) -> float:
        return self.ping_timeout_ms / 1000

    # -- Validation ---------------------------------------------------------

    def validate(self) -> SpeedTestConfig:
        """Raise :class:`ConfigurationError` if anything is out of range."""
        if self.timeout_ms <= 0 or self.ping_timeout_ms <= 0:
            raise ConfigurationError("Timeouts must be positive")
        for key in ("ping_measurements", "jitter_measurements"):
            value = getattr(self, key)
            if not MIN_PING_COUNT <= value <= MAX_PING_COUNT:
                raise ConfigurationError(
                    f"{key} must be between {MIN_PING_COUNT} and {MAX_PING_COUNT}"
                )
        if self.ping_delay_ms < 0 or self.jitter_delay_ms < 0:
            raise ConfigurationError("Ping and jitter delays cannot be negative")
        for key in ("download_sizes", "upload_sizes"):
            sizes = getattr(self, key)
            if not sizes:
                raise ConfigurationError(f"{key} cannot be empty")
            if any(s <= 0 for s in sizes):
                raise ConfigurationError(f"{key} must contain positive byte counts")
        if not 0 <= self.min_ping_ms < self.max_ping_ms:
            raise ConfigurationError(
                f"Invalid ping bounds: [{self.min_ping_ms}, {self.max_ping_ms}]"
            )
        if self.overhead_compensation <= 0:
            raise ConfigurationError("overhead_compensation must be positive")
        if self.deadline_s < 0:
            raise ConfigurationError("deadline_s cannot be negative (use 0 to disable)")
        return self

    # -- Serialisation ------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SpeedTestConfig:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            LOGGER.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        try:
            return cls(**{k: v for k, v in data.items() if k in known})
        except TypeError as exc:
            raise ConfigurationError(str(exc)) from exc


DEFAULTS: Dict[str, Any] = SpeedTestConfig().to_dict()


# ---------------------------------------------------------------------------
# Read / Write
# ---------------------------------------------------------------------------

def _load_file() -> Dict[str, Any]:
    path = _config_path()
    if not os.path.isfile(path):
        return {}

    try:
        with open(path, encoding="utf-8") as fh:
            user = json.load(fh)
    except (json.JSONDecodeError, IOError) as exc:
        LOGGER.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}

    return user if isinstance(user, dict) else {}


def load_config(environ: Optional[Mapping[str, str]] = None) -> SpeedTestConfig:
    """Defaults, overlaid with the config file, overlaid with the environment."""
    data = dict(DEFAULTS)
    data.update(_load_file())
    data.update(collect_overrides(_ENV_SCHEMA, environ))
    return SpeedTestConfig.from_dict(data).validate()


def save_config(config: Dict[str, Any]) -> str:
    """Write *config* to disk.  Returns the file path."""
    path = _config_path()
    os.makedirs(os.path.dirname(path), exist_ok=True)

    with open(path, "w", encoding="utf-8") as fh:
        json.dump(config, fh, indent=2, ensure_ascii=False)

    return path


def get_config_value(key: str) -> Any:
    """Get a single value from the config file (or its default)."""
    return _load_file().get(key, DEFAULTS.get(key))


def set_config_value(key: str, value: Any) -> str:
    """Set a single config value and persist.  Returns file path."""
    if key not in DEFAULTS:
        raise ConfigurationError(f"Unknown config key: {key}")
    config = _load_file()
    config[key] = value
    try:
        SpeedTestConfig.from_dict({**DEFAULTS, **config}).validate()
    except TypeError as exc:
        raise ConfigurationError(f"Invalid value for {key}: {value!r}") from exc
    return save_config(config)


def config_path() -> str:
    """Return the config file path (for display purposes)."""
    return _config_path()
