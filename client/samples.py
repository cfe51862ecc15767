"""
Raw measurement samples.

One :class:`Sample` per attempt, created by the collector, consumed by the
aggregator and never persisted.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterable, List, Optional


class SampleKind(str, enum.Enum):
    PING = "ping"
    JITTER_TICK = "jitter-tick"
    DOWNLOAD = "download"
    UPLOAD = "upload"


class Outcome(str, enum.Enum):
    OK = "ok"
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transportError"
    REJECTED_OUTLIER = "rejectedOutlier"


@dataclass(frozen=True)
class Sample:
    """
    One measurement attempt.

    ``value`` is milliseconds for latency kinds and bits per second for
    throughput kinds.  It is only meaningful when ``outcome`` is ``OK`` (or
    ``REJECTED_OUTLIER``, where it records the offending reading).
    """

    kind: SampleKind
    source: str
    value: float = 0.0
    byte_size: int = 0
    outcome: Outcome = Outcome.OK
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK

    @property
    def mbps(self) -> float:
        return self.value / 1_000_000

    def to_dict(self) -> dict:
        data = {
            "kind": self.kind.value,
            "source": self.source,
            "value": round(self.value, 3),
            "outcome": self.outcome.value,
        }
        if self.byte_size:
            data["byte_size"] = self.byte_size
        if self.error:
            data["error"] = self.error
        return data


def ok_values(samples: Iterable[Sample]) -> List[float]:
    """Values of the usable samples, in collection order."""
    return [s.value for s in samples if s.ok]
