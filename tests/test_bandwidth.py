from __future__ import annotations

import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer

import httpx
import pytest

from ro_monitoring.bandwidth import BandwidthSampler, compute_mbps
from ro_monitoring.errors import BandwidthError


PAYLOAD_BYTES = 1_048_576
PAYLOAD_SECONDS = 1.0
CHUNKS = 16


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def do_GET(self) -> None:  # noqa: N802
        if self.path == "/paced":
            chunk = b"\0" * (PAYLOAD_BYTES // CHUNKS)
            self.send_response(200)
            self.send_header("Content-Type", "application/octet-stream")
            self.send_header("Content-Length", str(PAYLOAD_BYTES))
            self.end_headers()
            started = time.perf_counter()
            for i in range(1, CHUNKS + 1):
                # Pace against the start time so sleep jitter does not accumulate.
                delay = started + (i * PAYLOAD_SECONDS / CHUNKS) - time.perf_counter()
                if delay > 0:
                    time.sleep(delay)
                self.wfile.write(chunk)
            return

        if self.path == "/small":
            body = b"x" * 4096
            self.send_response(200)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
            return

        body = b"Not Found"
        self.send_response(404)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


@pytest.fixture(scope="module")
def payload_server_base_url() -> str:
    httpd = HTTPServer(("127.0.0.1", 0), _Handler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()

    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.mark.parametrize(
    "bytes_received,seconds",
    [(1_048_576, 1.0), (131_072, 0.5), (10_000_000, 3.7), (1, 0.001), (0, 2.0)],
)
def test_compute_mbps_uses_binary_mega(bytes_received: int, seconds: float) -> None:
    expected = bytes_received * 8 / (seconds * 2**20)
    assert compute_mbps(bytes_received, seconds) == pytest.approx(expected, rel=1e-12)


def test_compute_mbps_rejects_bad_inputs() -> None:
    with pytest.raises(BandwidthError):
        compute_mbps(100, 0.0)
    with pytest.raises(BandwidthError):
        compute_mbps(-1, 1.0)


@pytest.mark.asyncio
async def test_one_mebibyte_in_one_second_is_eight_mbps(payload_server_base_url: str) -> None:
    sampler = BandwidthSampler()
    mbps = await sampler.sample(f"{payload_server_base_url}/paced", timeout_seconds=10.0)
    assert mbps == pytest.approx(8.0, rel=0.01)


@pytest.mark.asyncio
async def test_sampler_uses_injected_client(payload_server_base_url: str) -> None:
    async with httpx.AsyncClient() as client:
        sampler = BandwidthSampler(client, chunk_size=1024)
        mbps = await sampler.sample(f"{payload_server_base_url}/small")
        assert mbps > 0
        assert not client.is_closed


@pytest.mark.asyncio
async def test_http_error_status_is_a_sampler_failure(payload_server_base_url: str) -> None:
    with pytest.raises(BandwidthError):
        await BandwidthSampler().sample(f"{payload_server_base_url}/missing")


@pytest.mark.asyncio
async def test_connection_failure_is_a_sampler_failure() -> None:
    # Bind then close to get a port nothing listens on.
    httpd = HTTPServer(("127.0.0.1", 0), _Handler)
    host, port = httpd.server_address
    httpd.server_close()
    with pytest.raises(BandwidthError):
        await BandwidthSampler().sample(f"http://{host}:{port}/paced", timeout_seconds=5.0)


@pytest.mark.asyncio
async def test_deadline_is_a_sampler_failure(payload_server_base_url: str) -> None:
    with pytest.raises(BandwidthError):
        await BandwidthSampler().sample(f"{payload_server_base_url}/paced", timeout_seconds=0.2)


@pytest.mark.asyncio
async def test_empty_url_is_a_sampler_failure() -> None:
    with pytest.raises(BandwidthError):
        await BandwidthSampler().sample("")
