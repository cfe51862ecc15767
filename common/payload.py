"""
Synthetic payload generation for throughput tests.

A payload is one small random tile repeated until the requested length is
reached.  Filling is linear in the output size and needs no extra memory
beyond the tile, so even the largest transfers are cheap to build.
"""
from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Dict, Iterable, Optional

LOGGER = logging.getLogger(__name__)

TILE_SIZE = 1024

RandomSource = Callable[[int], bytes]


def clamp_size(size: int, min_size: int, max_size: int) -> int:
    """Force *size* into ``[min_size, max_size]``."""
    return max(min_size, min(size, max_size))


def generate_payload(size: int, rng: Optional[RandomSource] = None) -> bytes:
    """Return exactly *size* bytes built from one random 1 KiB tile."""
    if size <= 0:
        return b""
    tile = (rng or os.urandom)(TILE_SIZE)
    full, rest = divmod(size, TILE_SIZE)
    return tile * full + tile[:rest]


class PayloadGenerator:
    """Bounded payload factory: out-of-range sizes are clamped, never rejected."""

    def __init__(
        self,
        min_size: int,
        max_size: int,
        rng: Optional[RandomSource] = None,
    ) -> None:
        self.min_size = min_size
        self.max_size = max_size
        self._rng = rng

    def clamp(self, size: int) -> int:
        return clamp_size(size, self.min_size, self.max_size)

    def generate(self, size: int) -> bytes:
        return generate_payload(self.clamp(size), self._rng)


class PayloadCache:
    """
    Pre-generated download buffers, owned by the server application.

    Buffers for the preset sizes are built once (eagerly by :meth:`warm`, or
    on first use) and only ever handed out as immutable ``bytes``.  Sizes
    without a preset are generated per request.
    """

    def __init__(self, generator: PayloadGenerator, preset_sizes: Iterable[int] = ()) -> None:
        self.generator = generator
        self.preset_sizes = sorted({generator.clamp(s) for s in preset_sizes})
        self._buffers: Dict[int, bytes] = {}
        self._lock = threading.Lock()

    def warm(self) -> None:
        """Build every preset buffer now."""
        for size in self.preset_sizes:
            self._preset(size)
        LOGGER.info("Payload cache ready: %d preset buffer(s)", len(self._buffers))

    def get(self, size: int) -> bytes:
        """Return a payload of the clamped *size*."""
        size = self.generator.clamp(size)
        if size in self.preset_sizes:
            return self._preset(size)
        return self.generator.generate(size)

    def _preset(self, size: int) -> bytes:
        buf = self._buffers.get(size)
        if buf is not None:
            return buf
        with self._lock:
            # Re-check under the lock so each size is generated at most once.
            buf = self._buffers.get(size)
            if buf is None:
                buf = self.generator.generate(size)
                self._buffers[size] = buf
                LOGGER.debug("Generated preset payload of %d bytes", size)
        return buf
