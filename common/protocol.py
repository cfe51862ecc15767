"""
HTTP wire protocol spoken between the measurement client and the server.

Exchanges::

    POST /transfer  application/json          {"type": "download", "size": N}
                    -> 200 application/octet-stream, exactly N bytes
    POST /transfer  application/octet-stream  <raw body>
                    -> 200 {"success": true, "type": "upload", "size": ...,
                            "duration": <ms>, "speed": <Mbps>}
    GET  /transfer  -> capabilities JSON
    GET  /ping      -> minimal JSON (HEAD supported)

Errors are JSON objects with an ``error`` key (and ``details`` for 500s).
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TRANSFER_PATH = "/transfer"
PING_PATH = "/ping"

CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_BINARY = "application/octet-stream"

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}

CHUNK_SIZE = 64 * 1024
MIN_UPLOAD_SPEED_MBPS = 0.1

PROTOCOL_VERSION = "1.0"


class TransferKind(str, enum.Enum):
    PING = "ping"
    DOWNLOAD = "download"
    UPLOAD = "upload"


class ServerTransferError(Exception):
    """A request the endpoint refuses; reported to the caller as a 4xx."""

    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


# ---------------------------------------------------------------------------
# Request description
# ---------------------------------------------------------------------------

@dataclass
class TransferRequest:
    """Everything the transfer timer needs to perform one exchange."""

    kind: TransferKind
    method: str
    url: str
    timeout: float
    json: Optional[Dict[str, Any]] = None
    body: Optional[bytes] = None
    expected_size: int = 0
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def ping(cls, url: str, timeout: float, method: str = "GET") -> TransferRequest:
        return cls(kind=TransferKind.PING, method=method, url=url, timeout=timeout)

    @classmethod
    def download(cls, base_url: str, size: int, timeout: float) -> TransferRequest:
        return cls(
            kind=TransferKind.DOWNLOAD,
            method="POST",
            url=base_url.rstrip("/") + TRANSFER_PATH,
            timeout=timeout,
            json={"type": TransferKind.DOWNLOAD.value, "size": size},
            expected_size=size,
        )

    @classmethod
    def upload(cls, base_url: str, body: bytes, timeout: float) -> TransferRequest:
        return cls(
            kind=TransferKind.UPLOAD,
            method="POST",
            url=base_url.rstrip("/") + TRANSFER_PATH,
            timeout=timeout,
            body=body,
            expected_size=len(body),
            headers={"Content-Type": CONTENT_TYPE_BINARY},
        )


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

@dataclass
class UploadAck:
    """Server acknowledgment of a completed upload."""

    size: int
    duration_ms: float
    speed_mbps: float
    success: bool = True

    @classmethod
    def from_dict(cls, data: Any) -> UploadAck:
        """Raises ``ValueError`` for anything that is not a well-formed ack."""
        if not isinstance(data, dict):
            raise ValueError(f"Malformed upload acknowledgment: {type(data).__name__}")
        try:
            return cls(
                size=int(data.get("size", 0)),
                duration_ms=float(data.get("duration", 0)),
                speed_mbps=float(data.get("speed", 0)),
                success=bool(data.get("success", False)),
            )
        except TypeError as exc:
            raise ValueError(f"Malformed upload acknowledgment: {exc}") from None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "type": TransferKind.UPLOAD.value,
            "size": self.size,
            "duration": round(self.duration_ms, 3),
            "speed": round(self.speed_mbps, 3),
        }


@dataclass
class Capabilities:
    """What a server advertises on ``GET /transfer``."""

    server: str
    min_file_size: int
    max_file_size: int
    max_upload_size: int
    supported_tests: List[str] = field(default_factory=list)
    preset_sizes: List[int] = field(default_factory=list)
    location: str = ""
    version: str = PROTOCOL_VERSION

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Capabilities:
        max_file = int(data.get("maxFileSize", 0))
        return cls(
            server=data.get("server", ""),
            min_file_size=int(data.get("minFileSize", 0)),
            max_file_size=max_file,
            max_upload_size=int(data.get("maxUploadSize", max_file)),
            supported_tests=list(data.get("supportedTests", [])),
            preset_sizes=[int(s) for s in data.get("presetSizes", [])],
            location=data.get("location", ""),
            version=data.get("version", PROTOCOL_VERSION),
        )

    def supports(self, kind: TransferKind) -> bool:
        return kind.value in self.supported_tests
