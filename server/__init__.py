"""Transfer server -- payload streaming and upload timing over HTTP."""

from .app import create_app, run_server, upload_speed_mbps
from .config import ServerConfig, load_server_config

__all__ = [
    "ServerConfig",
    "create_app",
    "load_server_config",
    "run_server",
    "upload_speed_mbps",
]
