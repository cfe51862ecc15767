"""
Sample collection -- one metric kind across an ordered list of targets.

Targets are measured strictly one after another.  Concurrent requests would
contend for the same bandwidth and bias throughput downward in ways that
cannot be told apart from a genuinely slow link.

A failing target never aborts the run: it yields a sample whose outcome is
not ``OK`` and the loop moves on.  Cancellation is the only thing that
stops a collection early.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Callable, List, Optional, Sequence, Union

from common.payload import generate_payload
from common.protocol import PING_PATH, TransferRequest

from .config import SpeedTestConfig
from .constants import TRANSFER_DELAY_MS
from .samples import Outcome, Sample, SampleKind
from .timer import CancelToken, TestCancelled, TimedTransfer, TransferTimer

LOGGER = logging.getLogger(__name__)

Target = Union[str, int]


class SampleCollector:
    """Turns target lists into :class:`Sample` sequences via a :class:`TransferTimer`."""

    def __init__(
        self,
        timer: TransferTimer,
        config: SpeedTestConfig,
        base_url: str,
        cancel_token: Optional[CancelToken] = None,
        deadline: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timer = timer
        self.config = config
        self.base_url = base_url.rstrip("/")
        self.cancel_token = cancel_token or timer.cancel_token
        self.deadline = deadline
        self._clock = clock

    # -- Target helpers -----------------------------------------------------

    @property
    def ping_url(self) -> str:
        return self.base_url + PING_PATH

    def ping_targets(self) -> List[str]:
        return [self.ping_url] * self.config.ping_measurements

    def jitter_targets(self) -> List[str]:
        return [self.ping_url] * self.config.jitter_measurements

    # -- Public API ---------------------------------------------------------

    async def collect(self, kind: SampleKind, targets: Sequence[Target]) -> List[Sample]:
        return [sample async for sample in self.iter_collect(kind, targets)]

    async def collect_ping(self, urls: Sequence[str]) -> List[Sample]:
        return await self.collect(SampleKind.PING, urls)

    async def collect_jitter(self, url: str, count: int) -> List[Sample]:
        return await self.collect(SampleKind.JITTER_TICK, [url] * count)

    async def collect_download(self, sizes: Sequence[int]) -> List[Sample]:
        return await self.collect(SampleKind.DOWNLOAD, sizes)

    async def collect_upload(self, sizes: Sequence[int]) -> List[Sample]:
        return await self.collect(SampleKind.UPLOAD, sizes)

    async def iter_collect(self, kind: SampleKind, targets: Sequence[Target]) -> AsyncIterator[Sample]:
        """Yield one sample per target, in order.  Raises ``TestCancelled``."""
        previous: Optional[Target] = None
        for index, target in enumerate(targets):
            self.cancel_token.raise_if_cancelled()

            if index > 0:
                await self._pause(self._delay_for(kind, same_target=target == previous))

            if self._expired():
                sample = Sample(
                    kind=kind,
                    source=str(target),
                    byte_size=_size_of(kind, target),
                    outcome=Outcome.TIMEOUT,
                    error="Run deadline exceeded",
                )
            else:
                sample = await self._attempt(kind, target)

            LOGGER.debug(
                "%s %d/%d %s -> %s %.3f",
                kind.value, index + 1, len(targets), target, sample.outcome.value, sample.value,
            )
            previous = target
            yield sample

    # -- Attempts -----------------------------------------------------------

    async def _attempt(self, kind: SampleKind, target: Target) -> Sample:
        if kind in (SampleKind.PING, SampleKind.JITTER_TICK):
            return await self._ping(kind, str(target))
        if kind is SampleKind.DOWNLOAD:
            return await self._download(int(target))
        return await self._upload(int(target))

    async def _ping(self, kind: SampleKind, url: str) -> Sample:
        request = TransferRequest.ping(url, self._timeout(self.config.ping_timeout), method="HEAD")
        timed = await self.timer.measure(request)
        if not timed.ok:
            return _failed(kind, url, timed)

        value = timed.elapsed_ms
        if kind is SampleKind.PING and not self.config.min_ping_ms <= value <= self.config.max_ping_ms:
            return Sample(
                kind=kind,
                source=url,
                value=value,
                outcome=Outcome.REJECTED_OUTLIER,
                error=f"Outside [{self.config.min_ping_ms:g}, {self.config.max_ping_ms:g}] ms",
            )
        return Sample(kind=kind, source=url, value=value)

    async def _download(self, size: int) -> Sample:
        request = TransferRequest.download(self.base_url, size, self._timeout(self.config.timeout))
        timed = await self.timer.measure(request)
        if not timed.ok:
            return _failed(SampleKind.DOWNLOAD, str(size), timed, byte_size=size)
        if timed.bytes_transferred == 0:
            return Sample(
                kind=SampleKind.DOWNLOAD,
                source=str(size),
                byte_size=size,
                outcome=Outcome.TRANSPORT_ERROR,
                error="Empty response body",
            )
        if timed.bytes_transferred != size:
            # The server clamps sizes; the bytes actually moved are what count.
            LOGGER.debug("Requested %d bytes, received %d", size, timed.bytes_transferred)
        return Sample(
            kind=SampleKind.DOWNLOAD,
            source=str(size),
            value=timed.bits_per_second,
            byte_size=timed.bytes_transferred,
        )

    async def _upload(self, size: int) -> Sample:
        body = generate_payload(size)
        request = TransferRequest.upload(self.base_url, body, self._timeout(self.config.timeout))
        timed = await self.timer.measure(request)
        if not timed.ok:
            return _failed(SampleKind.UPLOAD, str(size), timed, byte_size=size)
        if timed.ack is None or timed.ack.size < size:
            acked = timed.ack.size if timed.ack else 0
            return Sample(
                kind=SampleKind.UPLOAD,
                source=str(size),
                byte_size=size,
                outcome=Outcome.TRANSPORT_ERROR,
                error=f"Server acknowledged {acked} of {size} bytes",
            )
        return Sample(kind=SampleKind.UPLOAD, source=str(size), value=timed.bits_per_second, byte_size=size)

    # -- Timing helpers -----------------------------------------------------

    def _remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - self._clock()

    def _expired(self) -> bool:
        remaining = self._remaining()
        return remaining is not None and remaining <= 0

    def _timeout(self, attempt_timeout: float) -> float:
        remaining = self._remaining()
        if remaining is None:
            return attempt_timeout
        return max(min(attempt_timeout, remaining), 0.001)

    def _delay_for(self, kind: SampleKind, same_target: bool) -> float:
        if kind is SampleKind.JITTER_TICK:
            return self.config.jitter_delay_ms / 1000
        if kind is SampleKind.PING:
            return self.config.ping_delay_ms / 1000 if same_target else 0.0
        return TRANSFER_DELAY_MS / 1000

    async def _pause(self, seconds: float) -> None:
        """Sleep, waking early (and raising) if the run is cancelled."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self.cancel_token.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise TestCancelled()


def _failed(kind: SampleKind, source: str, timed: TimedTransfer, byte_size: int = 0) -> Sample:
    return Sample(
        kind=kind,
        source=source,
        byte_size=byte_size,
        outcome=timed.outcome,
        error=timed.error,
    )


def _size_of(kind: SampleKind, target: Target) -> int:
    if kind in (SampleKind.DOWNLOAD, SampleKind.UPLOAD):
        return int(target)
    return 0
