"""
Network measurement statistics.

Pure functions and lightweight dataclasses -- no I/O, no side effects.
Everything here is deterministic and easy to unit-test.
"""
from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from typing import List, Sequence


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass
class LatencyStats:
    """Descriptive statistics over a list of latency samples."""

    samples: List[float] = field(default_factory=list)
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    median: float = 0.0
    iqm: float = 0.0
    jitter: float = 0.0
    count: int = 0

    def calculate(self) -> None:
        if not self.samples:
            return
        self.count = len(self.samples)
        self.min = min(self.samples)
        self.max = max(self.samples)
        self.mean = statistics.mean(self.samples)
        self.median = statistics.median(self.samples)
        self.iqm = calculate_iqm(self.samples)
        self.jitter = calculate_jitter(self.samples)

    def to_dict(self) -> dict:
        return {
            "samples": [round(s, 3) for s in self.samples],
            "min": round(self.min, 3),
            "max": round(self.max, 3),
            "mean": round(self.mean, 3),
            "median": round(self.median, 3),
            "iqm": round(self.iqm, 3),
            "jitter": round(self.jitter, 3),
            "count": self.count,
        }


# ---------------------------------------------------------------------------
# Latency reducers
# ---------------------------------------------------------------------------

def min_ping(samples: Sequence[float]) -> float:
    """Best round trip.  Overhead only ever adds delay, so the minimum is the
    closest reading to the true RTT."""
    if not samples:
        return 0.0
    return min(samples)


def trimmed_mean(samples: Sequence[float]) -> float:
    """Mean without the single highest and lowest value (needs >= 3 values)."""
    if not samples:
        return 0.0
    if len(samples) < 3:
        return statistics.mean(samples)
    ordered = sorted(samples)
    return statistics.mean(ordered[1:-1])


def calculate_jitter(samples: Sequence[float]) -> float:
    """Mean absolute difference between consecutive samples."""
    if len(samples) < 2:
        return 0.0
    diffs = [abs(samples[i] - samples[i - 1]) for i in range(1, len(samples))]
    return statistics.mean(diffs)


# ---------------------------------------------------------------------------
# Throughput reducers
# ---------------------------------------------------------------------------

def throughput_bps(byte_count: int, elapsed_ms: float) -> float:
    if elapsed_ms <= 0:
        return 0.0
    return (byte_count * 8) / (elapsed_ms / 1000)


def weighted_mean(values: Sequence[float]) -> float:
    """
    Mean weighted by position: the i-th value counts ``i + 1`` times.

    Callers pass speeds ordered by ascending payload size, so larger
    transfers (less dominated by per-request overhead) weigh more.
    """
    if not values:
        return 0.0
    total_weight = len(values) * (len(values) + 1) / 2
    return sum(v * (i + 1) for i, v in enumerate(values)) / total_weight


def calculate_iqm(samples: Sequence[float]) -> float:
    """Interquartile mean -- mean of values between Q1 and Q3."""
    if not samples:
        return 0.0
    if len(samples) < 4:
        return statistics.mean(samples)

    ordered = sorted(samples)
    n = len(ordered)
    q1 = n // 4
    q3 = (3 * n) // 4
    middle = ordered[q1:q3]
    return statistics.mean(middle) if middle else statistics.mean(samples)


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

def format_speed(speed_mbps: float) -> str:
    """Human-readable speed string."""
    if speed_mbps >= 1000:
        return f"{speed_mbps / 1000:.2f} Gbps"
    return f"{speed_mbps:.2f} Mbps"


def format_latency(latency_ms: float) -> str:
    """Human-readable latency string."""
    if latency_ms >= 1000:
        return f"{latency_ms / 1000:.2f} s"
    return f"{latency_ms:.1f} ms"


def format_bytes(size: int) -> str:
    if size >= 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MiB"
    if size >= 1024:
        return f"{size / 1024:.0f} KiB"
    return f"{size} B"
