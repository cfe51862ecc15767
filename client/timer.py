"""
Transfer timer -- times one HTTP exchange end to end.

The clock starts immediately before the request is dispatched and stops
only once the whole response body has been consumed (downloads, pings) or
the upload acknowledgment has been read and parsed.  Timing header arrival
instead would grossly understate transfer time for large payloads.

Each exchange races a per-attempt timeout and a shared :class:`CancelToken`.
Whichever fires first cancels the in-flight request, which makes aiohttp
drop the underlying connection.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import aiohttp

from common.protocol import NO_CACHE_HEADERS, TransferKind, TransferRequest, UploadAck

from .constants import CHUNK_SIZE
from .samples import Outcome
from .stats import throughput_bps

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]


class TestCancelled(Exception):
    """The run was aborted through its :class:`CancelToken`."""

    __test__ = False  # not a pytest test class


class TransferRejected(Exception):
    """The server answered with an error status."""

    def __init__(self, status: int, message: str = "") -> None:
        super().__init__(f"HTTP {status}: {message}" if message else f"HTTP {status}")
        self.status = status


class CancelToken:
    """A one-shot cancellation flag observable from any coroutine."""

    def __init__(self) -> None:
        self._event: Optional[asyncio.Event] = None
        self._cancelled = False

    def _ensure_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    async def wait(self) -> None:
        await self._ensure_event().wait()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TestCancelled()


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class TimedTransfer:
    """Outcome of one timed exchange."""

    kind: TransferKind
    elapsed_ms: float = 0.0
    bytes_transferred: int = 0
    outcome: Outcome = Outcome.OK
    status: int = 0
    error: Optional[str] = None
    ack: Optional[UploadAck] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK

    @property
    def bits_per_second(self) -> float:
        return throughput_bps(self.bytes_transferred, self.elapsed_ms)


# ---------------------------------------------------------------------------
# Timer
# ---------------------------------------------------------------------------

class TransferTimer:
    """Performs and times :class:`TransferRequest` exchanges on one session."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        cancel_token: Optional[CancelToken] = None,
        clock: Clock = time.perf_counter,
    ) -> None:
        self.session = session
        self.cancel_token = cancel_token or CancelToken()
        self._clock = clock

    async def measure(self, request: TransferRequest) -> TimedTransfer:
        """
        Run *request* and return its timing.

        Network failures and timeouts are reported through
        :attr:`TimedTransfer.outcome`; only cancellation raises.
        """
        self.cancel_token.raise_if_cancelled()

        start = self._clock()
        exchange = asyncio.ensure_future(self._exchange(request))
        cancel_wait = asyncio.ensure_future(self.cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {exchange, cancel_wait},
                timeout=request.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()
            if not exchange.done():
                exchange.cancel()
            await asyncio.gather(exchange, cancel_wait, return_exceptions=True)

        if exchange in done:
            return self._finish(request, exchange, start)

        if self.cancel_token.cancelled:
            LOGGER.debug("Cancelled in-flight %s to %s", request.kind.value, request.url)
            raise TestCancelled()

        return TimedTransfer(
            kind=request.kind,
            elapsed_ms=request.timeout * 1000,
            outcome=Outcome.TIMEOUT,
            error=f"No complete response within {request.timeout:.1f}s",
        )

    def _finish(self, request: TransferRequest, exchange: asyncio.Future, start: float) -> TimedTransfer:
        try:
            nbytes, status, ack, end = exchange.result()
        except asyncio.TimeoutError:
            return TimedTransfer(kind=request.kind, outcome=Outcome.TIMEOUT, error="Socket timeout")
        except TransferRejected as exc:
            return TimedTransfer(
                kind=request.kind,
                outcome=Outcome.TRANSPORT_ERROR,
                status=exc.status,
                error=str(exc),
            )
        except (aiohttp.ClientError, OSError, ValueError) as exc:
            return TimedTransfer(
                kind=request.kind,
                outcome=Outcome.TRANSPORT_ERROR,
                error=str(exc) or type(exc).__name__,
            )

        return TimedTransfer(
            kind=request.kind,
            elapsed_ms=(end - start) * 1000,
            bytes_transferred=nbytes,
            status=status,
            ack=ack,
        )

    async def _exchange(self, request: TransferRequest) -> Tuple[int, int, Optional[UploadAck], float]:
        headers = {**NO_CACHE_HEADERS, **request.headers}

        async with self.session.request(
            request.method,
            request.url,
            json=request.json,
            data=request.body,
            headers=headers,
        ) as resp:
            if resp.status >= 400:
                text = await resp.text()
                raise TransferRejected(resp.status, _error_message(text))

            if request.kind is TransferKind.UPLOAD:
                payload = await resp.json(content_type=None)
                end = self._clock()
                ack = UploadAck.from_dict(payload)
                return request.expected_size, resp.status, ack, end

            nbytes = 0
            while True:
                chunk = await resp.content.read(CHUNK_SIZE)
                if not chunk:
                    break
                nbytes += len(chunk)
            end = self._clock()
            return nbytes, resp.status, None, end


def _error_message(text: str) -> str:
    text = text.strip()
    try:
        data = json.loads(text)
    except ValueError:
        return text[:120]
    if isinstance(data, dict) and "error" in data:
        return str(data["error"])
    return text[:120]
