"""
Shared constants used across all client modules.

Centralises magic numbers, default headers, and tunables so they live in
exactly one place.
"""
from common.protocol import NO_CACHE_HEADERS

# ---------------------------------------------------------------------------
# HTTP headers
# ---------------------------------------------------------------------------

USER_AGENT = "speedcheck/2.0 (+aiohttp)"

COMMON_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "*/*",
    # Compressed transfers would measure the codec, not the link.
    "Accept-Encoding": "identity",
    **NO_CACHE_HEADERS,
}

DEFAULT_SERVER_URL = "http://127.0.0.1:8080"

# ---------------------------------------------------------------------------
# Sizes
# ---------------------------------------------------------------------------

MIB = 1024 * 1024

DEFAULT_DOWNLOAD_SIZES = [1 * MIB, 2 * MIB, 5 * MIB, 10 * MIB]
DEFAULT_UPLOAD_SIZES = [MIB // 2, 1 * MIB, 2 * MIB, 5 * MIB]

CHUNK_SIZE = 64 * 1024

# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------

DEFAULT_PING_TIMEOUT_MS = 3_000
DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_DEADLINE_S = 120.0

DEFAULT_PING_COUNT = 10
DEFAULT_JITTER_COUNT = 20
MIN_PING_COUNT = 1
MAX_PING_COUNT = 100

PING_DELAY_MS = 100             # between pings to the same server
JITTER_DELAY_MS = 50            # between jitter ticks
TRANSFER_DELAY_MS = 200         # between bulk transfers

# ---------------------------------------------------------------------------
# Sanity bounds
# ---------------------------------------------------------------------------

MIN_PING_MS = 1.0
MAX_PING_MS = 1000.0

DEFAULT_PING_SERVERS = [
    "https://www.google.com",
    "https://www.cloudflare.com",
    "https://www.amazon.com",
    "https://www.microsoft.com",
]

# ---------------------------------------------------------------------------
# Progress schedule (percent)
# ---------------------------------------------------------------------------

PROGRESS_PING = (0.0, 15.0)
PROGRESS_JITTER = (15.0, 25.0)
PROGRESS_DOWNLOAD = (25.0, 65.0)
PROGRESS_UPLOAD = (65.0, 90.0)
PROGRESS_GRADING = (90.0, 100.0)

# ---------------------------------------------------------------------------
# Worst-case stand-ins for metrics that could not be measured or estimated
# ---------------------------------------------------------------------------

WORST_PING_MS = MAX_PING_MS
WORST_JITTER_MS = 50.0
WORST_SPEED_MBPS = 0.0
