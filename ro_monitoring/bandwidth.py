from __future__ import annotations

import asyncio
import time

import httpx
import structlog

from ro_monitoring.errors import BandwidthError


logger = structlog.get_logger(__name__)

BITS_PER_BYTE = 8
MEGABIT = 1_048_576  # binary mega, 2**20
DEFAULT_CHUNK_SIZE = 8192


def compute_mbps(bytes_received: int, elapsed_seconds: float) -> float:
    """Throughput in megabits per second using binary mega (2**20 bits)."""
    if elapsed_seconds <= 0:
        raise BandwidthError(f"elapsed time must be positive, got {elapsed_seconds!r}")
    if bytes_received < 0:
        raise BandwidthError(f"byte count must be non-negative, got {bytes_received!r}")
    return (float(bytes_received) * BITS_PER_BYTE) / (float(elapsed_seconds) * MEGABIT)


class BandwidthSampler:
    """Downloads a reference payload and reports the observed downstream throughput.

    The clock starts once the response headers have arrived (connection ready) and
    stops at the last byte, so connection setup and TLS handshakes are excluded.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, *, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._client = client
        self.chunk_size = max(1, int(chunk_size))

    async def sample(self, url: str, *, timeout_seconds: float | None = None) -> float:
        url = str(url or "").strip()
        if not url:
            raise BandwidthError("no bandwidth test URL configured")

        try:
            if timeout_seconds is None:
                bytes_received, elapsed = await self._download(url)
            else:
                bytes_received, elapsed = await asyncio.wait_for(
                    self._download(url), timeout=max(0.001, float(timeout_seconds))
                )
        except asyncio.TimeoutError as exc:
            raise BandwidthError(f"bandwidth sample timed out after {timeout_seconds}s") from exc
        except httpx.HTTPError as exc:
            raise BandwidthError(f"{type(exc).__name__}: {exc}") from exc
        except OSError as exc:
            raise BandwidthError(f"{type(exc).__name__}: {exc}") from exc

        mbps = compute_mbps(bytes_received, elapsed)
        logger.info(
            "Bandwidth sampled",
            url=url,
            bytes_received=bytes_received,
            elapsed_seconds=round(elapsed, 3),
            mbps=round(mbps, 3),
        )
        return mbps

    async def _download(self, url: str) -> tuple[int, float]:
        if self._client is not None:
            return await self._stream(self._client, url)
        async with httpx.AsyncClient(timeout=None) as client:
            return await self._stream(client, url)

    async def _stream(self, client: httpx.AsyncClient, url: str) -> tuple[int, float]:
        async with client.stream("GET", url, follow_redirects=True) as resp:
            resp.raise_for_status()
            started = time.perf_counter()
            total = 0
            async for chunk in resp.aiter_raw(self.chunk_size):
                total += len(chunk)
            elapsed = time.perf_counter() - started
        return total, elapsed
