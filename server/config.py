"""
Transfer server configuration.

Static for the lifetime of the process; read from ``SPEEDCHECK_*``
environment variables::

    SPEEDCHECK_MIN_FILE_SIZE=1048576
    SPEEDCHECK_MAX_FILE_SIZE=52428800
    SPEEDCHECK_MAX_UPLOAD_SIZE=52428800
    SPEEDCHECK_UPLOAD_TIMEOUT_MS=60000
    SPEEDCHECK_PRESET_SIZES=1048576,2097152,5242880,10485760
    SPEEDCHECK_SERVER_NAME="SpeedCheck"
    SPEEDCHECK_HOST=0.0.0.0
    SPEEDCHECK_PORT=8080
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from common.env import ConfigurationError, collect_overrides

MIB = 1024 * 1024

_ENV_SCHEMA = {
    "min_file_size": int,
    "max_file_size": int,
    "max_upload_size": int,
    "upload_timeout_ms": int,
    "preset_sizes": "sizes",
    "server_name": str,
    "server_location": str,
    "host": str,
    "port": int,
}


@dataclass
class ServerConfig:
    min_file_size: int = 1 * MIB
    max_file_size: int = 50 * MIB
    max_upload_size: int = 0  # 0 -> same as max_file_size
    upload_timeout_ms: int = 60_000
    preset_sizes: List[int] = field(
        default_factory=lambda: [1 * MIB, 2 * MIB, 5 * MIB, 10 * MIB]
    )
    server_name: str = "SpeedCheck"
    server_location: str = "Global Network"
    version: str = "2.0.0"
    host: str = "0.0.0.0"
    port: int = 8080

    def __post_init__(self) -> None:
        if not self.max_upload_size:
            self.max_upload_size = self.max_file_size

    def validate(self) -> ServerConfig:
        """Raise :class:`ConfigurationError` on inconsistent bounds."""
        if self.min_file_size <= 0:
            raise ConfigurationError("min_file_size must be positive")
        if self.max_file_size < self.min_file_size:
            raise ConfigurationError(
                f"max_file_size ({self.max_file_size}) is below "
                f"min_file_size ({self.min_file_size})"
            )
        if self.max_upload_size <= 0:
            raise ConfigurationError("max_upload_size must be positive")
        if self.upload_timeout_ms <= 0:
            raise ConfigurationError("upload_timeout_ms must be positive")
        if any(size <= 0 for size in self.preset_sizes):
            raise ConfigurationError("preset_sizes must all be positive")
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"port out of range: {self.port}")
        return self


def load_server_config(environ: Optional[Mapping[str, str]] = None) -> ServerConfig:
    """Build and validate a :class:`ServerConfig` from the environment."""
    overrides = collect_overrides(_ENV_SCHEMA, environ)
    return ServerConfig(**overrides).validate()  # type: ignore[arg-type]
