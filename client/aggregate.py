"""
Outlier-resistant aggregation of raw samples into one value per metric.

Only ``OK`` samples contribute.  When a metric ends up with none, the
aggregator never raises: it returns an *estimate* derived from a metric that
was collected earlier in the run, tagged with its provenance, or an explicit
``UNAVAILABLE`` when nothing usable exists.  Callers decide how to present
the difference.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .samples import Outcome, Sample, SampleKind
from .stats import calculate_jitter, min_ping, trimmed_mean, weighted_mean

LOGGER = logging.getLogger(__name__)

# Heuristic curves used when a metric has no usable samples.
JITTER_FROM_PING_RATIO = 0.10
DOWNLOAD_FROM_PING_BASE = 100.0
DOWNLOAD_FROM_PING_SLOPE = 1.5
MIN_ESTIMATED_DOWNLOAD = 1.0
UPLOAD_FROM_DOWNLOAD_RATIO = 0.15
MIN_ESTIMATED_UPLOAD = 0.5


class MetricKind(str, enum.Enum):
    PING = "ping"
    JITTER = "jitter"
    DOWNLOAD = "download"
    UPLOAD = "upload"


class Provenance(str, enum.Enum):
    MEASURED = "measured"
    ESTIMATED = "estimated"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class MetricValue:
    """Tagged result: ``Measured(v) | Estimated(v, reason) | Unavailable(reason)``."""

    provenance: Provenance
    value: Optional[float] = None
    reason: str = ""

    @classmethod
    def measured(cls, value: float) -> MetricValue:
        return cls(Provenance.MEASURED, value)

    @classmethod
    def estimated(cls, value: float, reason: str) -> MetricValue:
        return cls(Provenance.ESTIMATED, value, reason)

    @classmethod
    def unavailable(cls, reason: str) -> MetricValue:
        return cls(Provenance.UNAVAILABLE, None, reason)

    @property
    def is_measured(self) -> bool:
        return self.provenance is Provenance.MEASURED

    @property
    def has_value(self) -> bool:
        return self.value is not None

    def value_or(self, default: float) -> float:
        return self.value if self.value is not None else default

    def to_dict(self) -> dict:
        data: dict = {"provenance": self.provenance.value}
        if self.value is not None:
            data["value"] = round(self.value, 3)
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass(frozen=True)
class AggregatedMetric:
    """One finalized metric plus the bookkeeping behind it."""

    metric_kind: MetricKind
    value: MetricValue
    sample_count: int = 0
    rejected_count: int = 0
    timeout_count: int = 0
    outlier_count: int = 0
    samples: Sequence[Sample] = field(default_factory=tuple, compare=False, repr=False)

    @property
    def ok_count(self) -> int:
        return self.sample_count - self.rejected_count

    def to_dict(self) -> dict:
        return {
            "metric": self.metric_kind.value,
            **self.value.to_dict(),
            "sample_count": self.sample_count,
            "rejected_count": self.rejected_count,
            "timeout_count": self.timeout_count,
            "outlier_count": self.outlier_count,
        }


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _build(kind: MetricKind, samples: Sequence[Sample], value: MetricValue) -> AggregatedMetric:
    rejected = [s for s in samples if not s.ok]
    return AggregatedMetric(
        metric_kind=kind,
        value=value,
        sample_count=len(samples),
        rejected_count=len(rejected),
        timeout_count=sum(1 for s in rejected if s.outcome is Outcome.TIMEOUT),
        outlier_count=sum(1 for s in rejected if s.outcome is Outcome.REJECTED_OUTLIER),
        samples=tuple(samples),
    )


def _ok(samples: Sequence[Sample]) -> list:
    return [s for s in samples if s.ok]


def _usable(metric: Optional[AggregatedMetric]) -> Optional[float]:
    if metric is None or not metric.value.has_value:
        return None
    return metric.value.value


def _fallback(kind: MetricKind, samples: Sequence[Sample], value: MetricValue) -> AggregatedMetric:
    if value.has_value:
        LOGGER.warning(
            "No usable %s samples (%d attempted); using estimate %.2f (%s)",
            kind.value, len(samples), value.value, value.reason,
        )
    else:
        LOGGER.warning("No usable %s samples (%d attempted) and no basis for an estimate", kind.value, len(samples))
    return _build(kind, samples, value)


# ---------------------------------------------------------------------------
# Latency
# ---------------------------------------------------------------------------

def aggregate_ping(
    samples: Sequence[Sample],
    multi_server: Optional[AggregatedMetric] = None,
) -> AggregatedMetric:
    """Single-best ping: the minimum of the usable round trips."""
    ok = _ok(samples)
    if ok:
        return _build(MetricKind.PING, samples, MetricValue.measured(min_ping([s.value for s in ok])))

    external = _usable(multi_server)
    if external is not None:
        return _fallback(
            MetricKind.PING, samples, MetricValue.estimated(external, "external multi-server ping"),
        )
    return _fallback(MetricKind.PING, samples, MetricValue.unavailable("no ping succeeded"))


def aggregate_multi_server_ping(samples: Sequence[Sample]) -> AggregatedMetric:
    """Average over several servers with the single highest and lowest dropped."""
    ok = _ok(samples)
    if ok:
        return _build(MetricKind.PING, samples, MetricValue.measured(trimmed_mean([s.value for s in ok])))
    return _build(MetricKind.PING, samples, MetricValue.unavailable("no external server answered"))


def aggregate_jitter(
    samples: Sequence[Sample],
    ping: Optional[AggregatedMetric] = None,
) -> AggregatedMetric:
    """Mean absolute difference between consecutive usable round trips."""
    values = [s.value for s in _ok(samples)]
    if len(values) >= 2:
        return _build(MetricKind.JITTER, samples, MetricValue.measured(calculate_jitter(values)))

    ping_ms = _usable(ping)
    if ping_ms is not None:
        return _fallback(
            MetricKind.JITTER,
            samples,
            MetricValue.estimated(ping_ms * JITTER_FROM_PING_RATIO, "fraction of ping"),
        )
    return _fallback(MetricKind.JITTER, samples, MetricValue.unavailable("fewer than two jitter ticks succeeded"))


# ---------------------------------------------------------------------------
# Throughput
# ---------------------------------------------------------------------------

def throughput_mbps(samples: Sequence[Sample], overhead_compensation: float = 1.0) -> float:
    """Weighted mean of per-transfer speeds, larger payloads weighing more."""
    ok = sorted(_ok(samples), key=lambda s: s.byte_size)
    speeds = [s.mbps for s in ok]
    return weighted_mean(speeds) * overhead_compensation


def estimate_download_from_ping(ping_ms: float) -> float:
    return max(DOWNLOAD_FROM_PING_BASE - ping_ms * DOWNLOAD_FROM_PING_SLOPE, MIN_ESTIMATED_DOWNLOAD)


def aggregate_download(
    samples: Sequence[Sample],
    ping: Optional[AggregatedMetric] = None,
    overhead_compensation: float = 1.0,
) -> AggregatedMetric:
    if _ok(samples):
        value = throughput_mbps(samples, overhead_compensation)
        return _build(MetricKind.DOWNLOAD, samples, MetricValue.measured(value))

    ping_ms = _usable(ping)
    if ping_ms is not None:
        return _fallback(
            MetricKind.DOWNLOAD,
            samples,
            MetricValue.estimated(estimate_download_from_ping(ping_ms), "heuristic from ping"),
        )
    return _fallback(MetricKind.DOWNLOAD, samples, MetricValue.unavailable("no download succeeded"))


def aggregate_upload(
    samples: Sequence[Sample],
    download: Optional[AggregatedMetric] = None,
    overhead_compensation: float = 1.0,
) -> AggregatedMetric:
    if _ok(samples):
        value = throughput_mbps(samples, overhead_compensation)
        return _build(MetricKind.UPLOAD, samples, MetricValue.measured(value))

    download_mbps = _usable(download)
    if download_mbps is not None:
        return _fallback(
            MetricKind.UPLOAD,
            samples,
            MetricValue.estimated(
                max(download_mbps * UPLOAD_FROM_DOWNLOAD_RATIO, MIN_ESTIMATED_UPLOAD),
                "fraction of download",
            ),
        )
    return _fallback(MetricKind.UPLOAD, samples, MetricValue.unavailable("no upload succeeded"))


def aggregate_throughput(
    kind: SampleKind,
    samples: Sequence[Sample],
    basis: Optional[AggregatedMetric] = None,
    overhead_compensation: float = 1.0,
) -> AggregatedMetric:
    """Dispatch on *kind*; *basis* is ping for downloads and download for uploads."""
    if kind is SampleKind.DOWNLOAD:
        return aggregate_download(samples, basis, overhead_compensation)
    if kind is SampleKind.UPLOAD:
        return aggregate_upload(samples, basis, overhead_compensation)
    raise ValueError(f"Not a throughput kind: {kind.value}")
