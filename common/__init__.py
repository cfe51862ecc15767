"""Code shared by the measurement client and the transfer server."""

from .env import ConfigurationError
from .payload import PayloadCache, PayloadGenerator, clamp_size, generate_payload
from .protocol import (
    Capabilities,
    ServerTransferError,
    TransferKind,
    TransferRequest,
    UploadAck,
)

__all__ = [
    "Capabilities",
    "ConfigurationError",
    "PayloadCache",
    "PayloadGenerator",
    "ServerTransferError",
    "TransferKind",
    "TransferRequest",
    "UploadAck",
    "clamp_size",
    "generate_payload",
]
