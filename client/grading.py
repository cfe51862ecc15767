"""
Connection grading and quality sub-scores.

Both are pure functions of the final numbers, so they are recomputed on
demand instead of being stored alongside them.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


# ---------------------------------------------------------------------------
# Grading
# ---------------------------------------------------------------------------

# (min average speed in Mbps, max ping in ms, grade, color)
_TIERS = [
    (100.0, 50.0, "A+", "green"),
    (50.0, 100.0, "A", "green"),
    (25.0, 150.0, "B", "yellow"),
    (10.0, 200.0, "C", "yellow"),
    (5.0, 300.0, "D", "red"),
    (1.0, 500.0, "E", "red"),
]

GRADES: Tuple[str, ...] = tuple(t[2] for t in _TIERS) + ("F",)


def grade(download_mbps: float, upload_mbps: float, ping_ms: float) -> str:
    """
    Return the letter grade for a run.

    The tier needs both the average of download and upload speed *and* the
    ping to qualify; the first tier that matches wins.
    """
    avg = (download_mbps + upload_mbps) / 2
    for min_speed, max_ping, letter, _ in _TIERS:
        if avg >= min_speed and ping_ms <= max_ping:
            return letter
    return "F"


def grade_color(letter: str) -> str:
    for _, _, tier, color in _TIERS:
        if tier == letter:
            return color
    return "red" if letter == "F" else "dim"


# ---------------------------------------------------------------------------
# Quality
# ---------------------------------------------------------------------------

def _clamp(value: float) -> float:
    return max(0.0, min(value, 100.0))


@dataclass(frozen=True)
class NetworkQualityScore:
    """0-100 sub-scores; higher is better."""

    stability: float
    consistency: float
    reliability: float

    @property
    def overall(self) -> float:
        return (self.stability + self.consistency + self.reliability) / 3

    def to_dict(self) -> dict:
        return {
            "stability": round(self.stability, 1),
            "consistency": round(self.consistency, 1),
            "reliability": round(self.reliability, 1),
        }


def quality_scores(
    download_mbps: float,
    upload_mbps: float,
    ping_ms: float,
    jitter_ms: float,
) -> NetworkQualityScore:
    """Stability from jitter, consistency from the up/down ratio, reliability from ping."""
    stability = 100 - jitter_ms * 2
    if download_mbps > 0:
        consistency = (upload_mbps / download_mbps) * 100
    else:
        consistency = 0.0
    reliability = 100 - ping_ms / 5
    return NetworkQualityScore(
        stability=_clamp(stability),
        consistency=_clamp(consistency),
        reliability=_clamp(reliability),
    )


def quality_color(score: float) -> str:
    if score >= 80:
        return "green"
    if score >= 50:
        return "yellow"
    return "red"
