"""Speed-check client library -- measurement, aggregation, and grading."""

from .aggregate import AggregatedMetric, MetricKind, MetricValue, Provenance
from .api import ClientInfo, SpeedCheckAPI
from .collector import SampleCollector
from .config import ConfigurationError, SpeedTestConfig, load_config
from .grading import NetworkQualityScore, grade, quality_scores
from .orchestrator import ProgressEvent, SpeedTestOrchestrator, TestState
from .result import SpeedTestResult
from .samples import Outcome, Sample, SampleKind
from .stats import (
    LatencyStats,
    calculate_iqm,
    calculate_jitter,
    format_latency,
    format_speed,
)
from .timer import CancelToken, TestCancelled, TransferTimer

__all__ = [
    "AggregatedMetric",
    "CancelToken",
    "ClientInfo",
    "ConfigurationError",
    "LatencyStats",
    "MetricKind",
    "MetricValue",
    "NetworkQualityScore",
    "Outcome",
    "ProgressEvent",
    "Provenance",
    "Sample",
    "SampleCollector",
    "SampleKind",
    "SpeedCheckAPI",
    "SpeedTestConfig",
    "SpeedTestOrchestrator",
    "SpeedTestResult",
    "TestCancelled",
    "TestState",
    "TransferTimer",
    "calculate_iqm",
    "calculate_jitter",
    "format_latency",
    "format_speed",
    "grade",
    "load_config",
    "quality_scores",
]
