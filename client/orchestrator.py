"""
Speed-test orchestration.

Sequences ping -> jitter -> download -> upload -> grading, one phase at a
time, and reports progress as a stream of :class:`ProgressEvent` objects the
caller pulls::

    orchestrator = SpeedTestOrchestrator(config)
    async for event in orchestrator.events():
        render(event)
    result = orchestrator.result

Progress follows a fixed schedule (ping 0-15, jitter 15-25, download 25-65,
upload 65-90, grading 90-100) and never goes backwards.  Cancelling a run
returns the orchestrator to ``IDLE`` and no ``COMPLETE`` event is emitted.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

import aiohttp

from common.payload import clamp_size
from common.protocol import TRANSFER_PATH, Capabilities, TransferKind

from .aggregate import (
    AggregatedMetric,
    MetricKind,
    aggregate_download,
    aggregate_jitter,
    aggregate_multi_server_ping,
    aggregate_ping,
    aggregate_upload,
)
from .api import ClientInfo
from .collector import SampleCollector, Target
from .config import SpeedTestConfig
from .constants import (
    COMMON_HEADERS,
    PROGRESS_DOWNLOAD,
    PROGRESS_GRADING,
    PROGRESS_JITTER,
    PROGRESS_PING,
    PROGRESS_UPLOAD,
)
from .result import SpeedTestResult
from .samples import Sample, SampleKind
from .timer import CancelToken, TestCancelled, TransferTimer

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[["ProgressEvent"], None]


class TestState(str, enum.Enum):
    IDLE = "idle"
    PINGING = "pinging"
    MEASURING_JITTER = "measuringJitter"
    DOWNLOADING = "downloading"
    UPLOADING = "uploading"
    GRADING = "grading"
    COMPLETE = "complete"
    FAILED = "failed"

    __test__ = False  # not a pytest test class


@dataclass(frozen=True)
class ProgressEvent:
    """One tick of progress.  Only the ``COMPLETE`` event carries a result."""

    state: TestState
    progress: float
    message: str = ""
    sample: Optional[Sample] = None
    result: Optional[SpeedTestResult] = None


class SpeedTestOrchestrator:
    """Runs one speed test at a time against a single server."""

    def __init__(
        self,
        config: SpeedTestConfig,
        base_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        client: Optional[ClientInfo] = None,
        server_label: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.base_url = (base_url or config.server_url).rstrip("/")
        self.client = client
        self.server_label = server_label or self.base_url
        self._session = session
        self._clock = clock
        self._state = TestState.IDLE
        self._progress = 0.0
        self._token: Optional[CancelToken] = None
        self.capabilities: Optional[Capabilities] = None
        self.result: Optional[SpeedTestResult] = None
        self.samples: Dict[SampleKind, List[Sample]] = {}

    # -- State --------------------------------------------------------------

    @property
    def state(self) -> TestState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state not in (TestState.IDLE, TestState.COMPLETE, TestState.FAILED)

    def cancel(self) -> None:
        """Abort the current run; in-flight transfers are dropped."""
        if self._token is not None:
            LOGGER.info("Cancelling speed test in state %s", self._state.value)
            self._token.cancel()

    # -- Public API ---------------------------------------------------------

    async def run(self, on_progress: Optional[ProgressCallback] = None) -> Optional[SpeedTestResult]:
        """Drive :meth:`events` to the end; ``None`` means the run was cancelled."""
        async for event in self.events():
            if on_progress is not None:
                on_progress(event)
        return self.result

    async def events(self) -> AsyncIterator[ProgressEvent]:
        if self.running:
            raise RuntimeError("A speed test is already running")

        self._token = CancelToken()
        self._progress = 0.0
        self.result = None
        self.samples = {}

        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession(headers=COMMON_HEADERS)
        try:
            async for event in self._sequence(session, self._token):
                yield event
        except TestCancelled:
            LOGGER.info("Speed test cancelled; partial results discarded")
            self._reset()
        except (asyncio.CancelledError, GeneratorExit):
            self._reset()
            raise
        except Exception:
            self._state = TestState.FAILED
            LOGGER.exception("Speed test failed")
            raise
        finally:
            if owns_session:
                await session.close()

    # -- Sequence -----------------------------------------------------------

    async def _sequence(self, session: aiohttp.ClientSession, token: CancelToken) -> AsyncIterator[ProgressEvent]:
        deadline = self._clock() + self.config.deadline_s if self.config.deadline_s > 0 else None
        timer = TransferTimer(session, token)
        collector = SampleCollector(timer, self.config, self.base_url, token, deadline, self._clock)

        yield self._enter(TestState.PINGING, PROGRESS_PING, "Checking server")
        download_sizes, upload_sizes = await self._self_configure(session, token)
        token.raise_if_cancelled()

        # -- Ping -----------------------------------------------------------
        ping_targets: List[Target] = list(collector.ping_targets())
        external_targets: List[Target] = list(self.config.ping_servers)
        span = _split(PROGRESS_PING, len(ping_targets), len(ping_targets) + len(external_targets))

        yield self._enter(TestState.PINGING, PROGRESS_PING, "Measuring latency")
        async for event in self._phase(collector, SampleKind.PING, ping_targets, span[0]):
            yield event

        external: Optional[AggregatedMetric] = None
        if external_targets:
            external_samples: List[Sample] = []
            async for event in self._phase(
                collector, SampleKind.PING, external_targets, span[1], external_samples,
            ):
                yield event
            external = aggregate_multi_server_ping(external_samples)
        ping = aggregate_ping(self.samples[SampleKind.PING], external)

        # -- Jitter ---------------------------------------------------------
        yield self._enter(TestState.MEASURING_JITTER, PROGRESS_JITTER, "Measuring jitter")
        async for event in self._phase(collector, SampleKind.JITTER_TICK, collector.jitter_targets(), PROGRESS_JITTER):
            yield event
        jitter = aggregate_jitter(self.samples[SampleKind.JITTER_TICK], ping)

        # -- Download -------------------------------------------------------
        yield self._enter(TestState.DOWNLOADING, PROGRESS_DOWNLOAD, "Testing download speed")
        async for event in self._phase(collector, SampleKind.DOWNLOAD, download_sizes, PROGRESS_DOWNLOAD):
            yield event
        download = aggregate_download(
            self.samples[SampleKind.DOWNLOAD], ping, self.config.overhead_compensation,
        )

        # -- Upload ---------------------------------------------------------
        yield self._enter(TestState.UPLOADING, PROGRESS_UPLOAD, "Testing upload speed")
        async for event in self._phase(collector, SampleKind.UPLOAD, upload_sizes, PROGRESS_UPLOAD):
            yield event
        upload = aggregate_upload(
            self.samples[SampleKind.UPLOAD], download, self.config.overhead_compensation,
        )

        # -- Grading --------------------------------------------------------
        token.raise_if_cancelled()
        yield self._enter(TestState.GRADING, PROGRESS_GRADING, "Grading connection")
        token.raise_if_cancelled()
        result = SpeedTestResult.from_metrics(
            {
                MetricKind.PING: ping,
                MetricKind.JITTER: jitter,
                MetricKind.DOWNLOAD: download,
                MetricKind.UPLOAD: upload,
            },
            server_label=self.server_label,
            client=self.client,
            external_ping=external,
        )
        self.result = result
        self._state = TestState.COMPLETE
        self._progress = 100.0
        LOGGER.info(
            "Speed test complete: %.2f/%.2f Mbps, ping %.1f ms, jitter %.1f ms, grade %s",
            result.download_mbps, result.upload_mbps, result.ping_ms, result.jitter_ms, result.grade,
        )
        yield ProgressEvent(TestState.COMPLETE, 100.0, "Complete", result=result)

    async def _phase(
        self,
        collector: SampleCollector,
        kind: SampleKind,
        targets: Sequence[Target],
        span: Tuple[float, float],
        into: Optional[List[Sample]] = None,
    ) -> AsyncIterator[ProgressEvent]:
        """Collect *targets*, yielding one event per sample spread across *span*."""
        bucket = into if into is not None else self.samples.setdefault(kind, [])
        start, end = span
        total = len(targets)
        async for sample in collector.iter_collect(kind, targets):
            bucket.append(sample)
            yield self._tick(start + (end - start) * len(bucket) / total, sample)

    # -- Self-configuration -------------------------------------------------

    async def _self_configure(
        self, session: aiohttp.ClientSession, token: CancelToken,
    ) -> Tuple[List[int], List[int]]:
        """Clamp the configured sizes to what the server advertises.

        A transfer kind the server does not list in ``supportedTests`` gets
        no sizes, so its phase records nothing and falls back to an
        estimate.  Servers that advertise no list are assumed to support both.
        """
        download_sizes = list(self.config.download_sizes)
        upload_sizes = list(self.config.upload_sizes)

        url = self.base_url + TRANSFER_PATH
        fetch = asyncio.ensure_future(self._fetch_capabilities(session, url))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({fetch, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not fetch.done():
                fetch.cancel()
            await asyncio.gather(fetch, cancelled, return_exceptions=True)
        if fetch.cancelled() or token.cancelled:
            raise TestCancelled()

        try:
            caps = fetch.result()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, TypeError, AttributeError) as exc:
            LOGGER.warning("Could not read server capabilities from %s: %s", url, exc)
            return download_sizes, upload_sizes

        self.capabilities = caps
        if caps.max_file_size > 0:
            download_sizes = _clamp_sizes(download_sizes, caps.min_file_size, caps.max_file_size)
        if caps.max_upload_size > 0:
            upload_sizes = _clamp_sizes(upload_sizes, 1, caps.max_upload_size)
        if caps.supported_tests:
            if not caps.supports(TransferKind.DOWNLOAD):
                LOGGER.warning("Server at %s does not offer download tests", url)
                download_sizes = []
            if not caps.supports(TransferKind.UPLOAD):
                LOGGER.warning("Server at %s does not offer upload tests", url)
                upload_sizes = []
        LOGGER.debug("Using download sizes %s, upload sizes %s", download_sizes, upload_sizes)
        return download_sizes, upload_sizes

    async def _fetch_capabilities(self, session: aiohttp.ClientSession, url: str) -> Capabilities:
        async with session.get(
            url, timeout=aiohttp.ClientTimeout(total=self.config.ping_timeout),
        ) as resp:
            resp.raise_for_status()
            return Capabilities.from_dict(await resp.json(content_type=None))

    # -- Event helpers ------------------------------------------------------

    def _enter(self, state: TestState, span: Tuple[float, float], message: str) -> ProgressEvent:
        self._state = state
        LOGGER.debug("Entering %s", state.value)
        return self._tick(span[0], message=message)

    def _tick(self, progress: float, sample: Optional[Sample] = None, message: str = "") -> ProgressEvent:
        self._progress = max(self._progress, min(progress, 100.0))
        return ProgressEvent(self._state, self._progress, message, sample)

    def _reset(self) -> None:
        self._state = TestState.IDLE
        self._progress = 0.0
        self.result = None


def _split(span: Tuple[float, float], first: int, total: int) -> Tuple[Tuple[float, float], Tuple[float, float]]:
    """Divide *span* in proportion ``first : total - first``."""
    start, end = span
    if total <= 0:
        return span, (end, end)
    middle = start + (end - start) * first / total
    return (start, middle), (middle, end)


def _clamp_sizes(sizes: Sequence[int], min_size: int, max_size: int) -> List[int]:
    return sorted({clamp_size(s, min_size, max_size) for s in sizes})
