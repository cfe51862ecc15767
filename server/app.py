"""
``aiohttp.web`` transfer endpoint.

Handlers are request-scoped: the only shared objects are the static
:class:`ServerConfig` and the read-only :class:`PayloadCache`, both injected
through the application at construction time.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

from aiohttp import web

from common.payload import PayloadCache, PayloadGenerator
from common.protocol import (
    CHUNK_SIZE,
    CONTENT_TYPE_BINARY,
    CONTENT_TYPE_JSON,
    MIN_UPLOAD_SPEED_MBPS,
    NO_CACHE_HEADERS,
    PING_PATH,
    TRANSFER_PATH,
    ServerTransferError,
    TransferKind,
    UploadAck,
)

from .config import ServerConfig

LOGGER = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey("config", ServerConfig)
PAYLOADS_KEY = web.AppKey("payloads", PayloadCache)
STARTED_KEY = web.AppKey("started", float)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _json(data: Dict[str, Any], status: int = 200) -> web.Response:
    return web.json_response(data, status=status, headers=NO_CACHE_HEADERS)


def _now_ms() -> int:
    return int(time.time() * 1000)


def upload_speed_mbps(size: int, duration_ms: float) -> float:
    """Throughput of a received body, floored so it is never zero."""
    if duration_ms <= 0:
        return MIN_UPLOAD_SPEED_MBPS
    speed = (size * 8) / (duration_ms / 1000) / 1_000_000
    return max(speed, MIN_UPLOAD_SPEED_MBPS)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:  # noqa: ANN001
    try:
        return await handler(request)
    except ServerTransferError as exc:
        LOGGER.warning("Rejected %s %s: %s", request.method, request.path, exc.message)
        return _json(exc.to_dict(), status=exc.status)
    except web.HTTPException:
        raise
    except Exception as exc:
        LOGGER.exception("Transfer failed: %s %s", request.method, request.path)
        return _json(
            {"error": "Test failed", "details": str(exc) or type(exc).__name__, "timestamp": _now_ms()},
            status=500,
        )


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def handle_transfer(request: web.Request) -> web.StreamResponse:
    content_type = request.content_type
    if content_type == CONTENT_TYPE_JSON:
        return await _handle_download(request)
    if content_type == CONTENT_TYPE_BINARY:
        return await _handle_upload(request)
    raise ServerTransferError("Invalid content type")


async def _handle_download(request: web.Request) -> web.StreamResponse:
    config = request.app[CONFIG_KEY]
    payloads = request.app[PAYLOADS_KEY]

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ServerTransferError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ServerTransferError("Request body must be a JSON object")

    if body.get("type") != TransferKind.DOWNLOAD.value:
        raise ServerTransferError("Invalid test type")

    size = body.get("size", config.min_file_size)
    if isinstance(size, bool) or not isinstance(size, int):
        raise ServerTransferError("Size must be an integer number of bytes")

    data = payloads.get(size)
    size = len(data)

    response = web.StreamResponse(
        status=200,
        headers={
            **NO_CACHE_HEADERS,
            "X-Speed-Test": "true",
            "X-Transfer-Size": str(size),
            "X-Timestamp": str(_now_ms()),
        },
    )
    response.content_type = CONTENT_TYPE_BINARY
    response.content_length = size
    await response.prepare(request)

    view = memoryview(data)
    try:
        for offset in range(0, size, CHUNK_SIZE):
            await response.write(view[offset:offset + CHUNK_SIZE])
        await response.write_eof()
    except ConnectionResetError:
        LOGGER.debug("Client went away during a %d byte download", size)
    return response


async def _handle_upload(request: web.Request) -> web.Response:
    config = request.app[CONFIG_KEY]
    ceiling = config.max_upload_size

    declared = request.content_length
    if declared is not None and declared > ceiling:
        # Refuse before reading a single byte of the body.
        raise ServerTransferError(f"File size too large (limit {ceiling} bytes)")
    if not request.body_exists:
        raise ServerTransferError("No request body")

    start = time.perf_counter()
    try:
        total = await asyncio.wait_for(
            _read_body(request, ceiling),
            timeout=config.upload_timeout_ms / 1000,
        )
    except asyncio.TimeoutError:
        raise RuntimeError("Upload timeout") from None
    duration_ms = (time.perf_counter() - start) * 1000

    if total == 0:
        raise ServerTransferError("No request body")

    ack = UploadAck(
        size=total,
        duration_ms=duration_ms,
        speed_mbps=upload_speed_mbps(total, duration_ms),
    )
    LOGGER.debug("Upload of %d bytes in %.1f ms", total, duration_ms)
    return _json({**ack.to_dict(), "timestamp": _now_ms()})


async def _read_body(request: web.Request, ceiling: int) -> int:
    """Stream the body in chunks, keeping only a running byte count."""
    total = 0
    async for chunk in request.content.iter_chunked(CHUNK_SIZE):
        total += len(chunk)
        if total > ceiling:
            raise ServerTransferError(f"File size too large (limit {ceiling} bytes)")
    return total


async def handle_capabilities(request: web.Request) -> web.Response:
    config = request.app[CONFIG_KEY]
    payloads = request.app[PAYLOADS_KEY]
    return _json({
        "status": "ready",
        "server": config.server_name,
        "location": config.server_location,
        "version": config.version,
        "uptime": round(time.monotonic() - request.app[STARTED_KEY], 3),
        "supportedTests": [TransferKind.DOWNLOAD.value, TransferKind.UPLOAD.value],
        "minFileSize": config.min_file_size,
        "maxFileSize": config.max_file_size,
        "maxUploadSize": config.max_upload_size,
        "presetSizes": payloads.preset_sizes,
        "timestamp": _now_ms(),
    })


async def handle_ping(request: web.Request) -> web.Response:
    config = request.app[CONFIG_KEY]
    if request.method == "HEAD":
        return web.Response(status=200, headers={**NO_CACHE_HEADERS, "X-Server-Provider": config.server_name})
    return _json({"success": True, "timestamp": _now_ms(), "server": config.server_name})


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

async def _warm_payloads(app: web.Application) -> None:
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, app[PAYLOADS_KEY].warm)


def create_app(
    config: Optional[ServerConfig] = None,
    payloads: Optional[PayloadCache] = None,
) -> web.Application:
    """Compose the application; the payload cache is built here unless injected."""
    config = (config or ServerConfig()).validate()
    if payloads is None:
        generator = PayloadGenerator(config.min_file_size, config.max_file_size)
        payloads = PayloadCache(generator, config.preset_sizes)

    app = web.Application(middlewares=[error_middleware])
    app[CONFIG_KEY] = config
    app[PAYLOADS_KEY] = payloads
    app[STARTED_KEY] = time.monotonic()

    app.router.add_post(TRANSFER_PATH, handle_transfer)
    app.router.add_get(TRANSFER_PATH, handle_capabilities)
    app.router.add_get(PING_PATH, handle_ping)  # also registers HEAD
    app.on_startup.append(_warm_payloads)

    LOGGER.info(
        "Transfer endpoint configured: sizes %d..%d bytes, upload limit %d bytes",
        config.min_file_size,
        config.max_file_size,
        config.max_upload_size,
    )
    return app


def run_server(config: ServerConfig) -> None:
    """Blocking entry point used by the CLI."""
    web.run_app(create_app(config), host=config.host, port=config.port, print=None)
