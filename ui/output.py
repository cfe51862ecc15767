"""
Output formatting -- JSON export, plain text, and CSV.
"""
from __future__ import annotations

import csv
import io
import json
import os
from typing import Any, Dict, Optional

from client.aggregate import MetricKind, Provenance
from client.result import SpeedTestResult
from common.protocol import PROTOCOL_VERSION

CSV_FIELDS = [
    "timestamp",
    "server",
    "isp",
    "ip",
    "ping_ms",
    "jitter_ms",
    "download_mbps",
    "upload_mbps",
    "grade",
    "estimated",
]


def create_result_json(
    result: SpeedTestResult,
    capabilities: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build the exported JSON document for one run."""
    data = result.to_dict()
    data["version"] = PROTOCOL_VERSION
    data["estimated"] = _estimated(result)
    if capabilities:
        data["serverCapabilities"] = capabilities
    return data


def _estimated(result: SpeedTestResult) -> list:
    return [kind.value for kind in MetricKind if result.provenance(kind) is not Provenance.MEASURED]


def save_json(result: Dict[str, Any], filepath: str) -> None:
    """Write *result* to *filepath* atomically (write-tmp then rename)."""
    dir_path = os.path.dirname(filepath) or "."
    tmp = os.path.join(dir_path, f".tmp_{os.path.basename(filepath)}")

    try:
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(result, fh, indent=2, ensure_ascii=False)
        os.replace(tmp, filepath)
    except (IOError, OSError) as exc:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise IOError(f"Failed to save JSON to {filepath}: {exc}") from exc


# ---------------------------------------------------------------------------
# Plain-text / CSV helpers
# ---------------------------------------------------------------------------

def format_text_result(result: SpeedTestResult) -> str:
    sep = "=" * 50
    mid = "-" * 50
    client = result.client
    lines = [
        sep,
        "SpeedCheck Results",
        sep,
        f"Server: {result.server_label}",
    ]
    if client is not None:
        lines.append(f"ISP: {client.isp}")
        lines.append(f"IP: {client.ip}")
    lines += [
        mid,
        f"Ping: {result.ping_ms:.1f} ms (jitter: {result.jitter_ms:.2f} ms)",
        f"Download: {result.download_mbps:.2f} Mbps",
        f"Upload: {result.upload_mbps:.2f} Mbps",
        f"Grade: {result.grade}",
    ]
    estimated = _estimated(result)
    if estimated:
        lines.append(f"Estimated: {', '.join(estimated)}")
    lines.append(sep)
    return "\n".join(lines)


def _csv_line(values: list) -> str:
    buf = io.StringIO()
    csv.writer(buf, lineterminator="").writerow(values)
    return buf.getvalue()


def format_csv_header() -> str:
    return _csv_line(CSV_FIELDS)


def format_csv_row(result: SpeedTestResult) -> str:
    client = result.client
    return _csv_line([
        result.timestamp,
        result.server_label,
        client.isp if client else "",
        client.ip if client else "",
        f"{result.ping_ms:.1f}",
        f"{result.jitter_ms:.2f}",
        f"{result.download_mbps:.2f}",
        f"{result.upload_mbps:.2f}",
        result.grade,
        " ".join(_estimated(result)),
    ])
