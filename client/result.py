"""
The record produced by one completed speed-test run.
"""
from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .aggregate import AggregatedMetric, MetricKind, Provenance
from .api import ClientInfo
from .constants import WORST_JITTER_MS, WORST_PING_MS, WORST_SPEED_MBPS
from .grading import NetworkQualityScore, grade, quality_scores

_WORST_CASE = {
    MetricKind.PING: WORST_PING_MS,
    MetricKind.JITTER: WORST_JITTER_MS,
    MetricKind.DOWNLOAD: WORST_SPEED_MBPS,
    MetricKind.UPLOAD: WORST_SPEED_MBPS,
}


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


@dataclass(frozen=True)
class SpeedTestResult:
    """
    Immutable outcome of one run.

    The headline numbers are always present.  A metric that could be neither
    measured nor estimated is filled with a worst-case stand-in, and
    :attr:`metrics` records which numbers are real.
    """

    download_mbps: float
    upload_mbps: float
    ping_ms: float
    jitter_ms: float
    server_label: str = ""
    client: Optional[ClientInfo] = None
    timestamp: str = field(default_factory=_now)
    metrics: Dict[MetricKind, AggregatedMetric] = field(default_factory=dict, compare=False)
    external_ping: Optional[AggregatedMetric] = field(default=None, compare=False)

    @classmethod
    def from_metrics(
        cls,
        metrics: Dict[MetricKind, AggregatedMetric],
        server_label: str = "",
        client: Optional[ClientInfo] = None,
        external_ping: Optional[AggregatedMetric] = None,
    ) -> SpeedTestResult:
        def _value(kind: MetricKind) -> float:
            metric = metrics.get(kind)
            if metric is None:
                return _WORST_CASE[kind]
            return metric.value.value_or(_WORST_CASE[kind])

        return cls(
            download_mbps=_value(MetricKind.DOWNLOAD),
            upload_mbps=_value(MetricKind.UPLOAD),
            ping_ms=_value(MetricKind.PING),
            jitter_ms=_value(MetricKind.JITTER),
            server_label=server_label,
            client=client,
            metrics=dict(metrics),
            external_ping=external_ping,
        )

    # -- Derived ------------------------------------------------------------

    @property
    def grade(self) -> str:
        return grade(self.download_mbps, self.upload_mbps, self.ping_ms)

    @property
    def quality(self) -> NetworkQualityScore:
        return quality_scores(self.download_mbps, self.upload_mbps, self.ping_ms, self.jitter_ms)

    def provenance(self, kind: MetricKind) -> Provenance:
        metric = self.metrics.get(kind)
        if metric is None:
            return Provenance.UNAVAILABLE
        return metric.value.provenance

    @property
    def fully_measured(self) -> bool:
        return all(self.provenance(kind) is Provenance.MEASURED for kind in MetricKind)

    # -- Serialisation ------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "server": self.server_label,
            "ping": round(self.ping_ms, 2),
            "jitter": round(self.jitter_ms, 2),
            "download": round(self.download_mbps, 2),
            "upload": round(self.upload_mbps, 2),
            "grade": self.grade,
            "quality": self.quality.to_dict(),
            "metrics": {kind.value: metric.to_dict() for kind, metric in self.metrics.items()},
        }
        if self.client is not None:
            data["client"] = self.client.to_dict()
        if self.external_ping is not None:
            data["external_ping"] = self.external_ping.to_dict()
        return data
