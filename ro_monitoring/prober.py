from __future__ import annotations

import asyncio
import math
import shutil
import sys

import structlog


logger = structlog.get_logger(__name__)

PROBE_METHODS = ("icmp", "tcp")
DEFAULT_TCP_PORTS = (7, 80, 443)


def ping_available() -> bool:
    return shutil.which("ping") is not None


def _ping_command(address: str, deadline_seconds: float) -> list[str]:
    # -W is the reply wait in whole seconds on Linux, milliseconds on macOS.
    if sys.platform == "darwin":
        wait = str(max(1, int(deadline_seconds * 1000)))
    else:
        wait = str(max(1, math.ceil(deadline_seconds)))
    return ["ping", "-n", "-q", "-c", "1", "-W", wait, address]


class ReachabilityProber:
    """Answers a single question: did the endpoint respond within the deadline.

    Every failure mode (resolution, I/O, timeout, missing ping binary) collapses to
    ``False``. Instances hold no per-call state and are safe to share across tasks.
    """

    def __init__(self, method: str = "icmp", tcp_ports: tuple[int, ...] | list[int] = DEFAULT_TCP_PORTS):
        method = str(method or "icmp").strip().lower()
        if method not in PROBE_METHODS:
            raise ValueError(f"Unknown probe method: {method}")
        self.method = method
        self.tcp_ports = tuple(int(p) for p in tcp_ports) or DEFAULT_TCP_PORTS
        self._ping_path = shutil.which("ping") if method == "icmp" else None

    async def probe(self, address: str, deadline_seconds: float) -> bool:
        address = str(address or "").strip()
        if not address:
            return False
        deadline_seconds = max(0.001, float(deadline_seconds))
        try:
            if self.method == "tcp":
                return await asyncio.wait_for(self._tcp_probe(address, deadline_seconds), timeout=deadline_seconds)
            return await self._icmp_probe(address, deadline_seconds)
        except asyncio.CancelledError:
            raise
        except (asyncio.TimeoutError, OSError, ValueError) as exc:
            logger.debug("Probe failed", address=address, error=f"{type(exc).__name__}: {exc}")
            return False
        except Exception as exc:
            logger.warning("Probe crashed", address=address, error=f"{type(exc).__name__}: {exc}")
            return False

    async def _icmp_probe(self, address: str, deadline_seconds: float) -> bool:
        if self._ping_path is None:
            logger.warning("ping executable not found; treating endpoint as unreachable", address=address)
            return False

        cmd = _ping_command(address, deadline_seconds)
        cmd[0] = self._ping_path
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            returncode = await asyncio.wait_for(proc.wait(), timeout=deadline_seconds)
        except BaseException:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
            raise
        return returncode == 0

    async def _tcp_probe(self, address: str, deadline_seconds: float) -> bool:
        # A refused connection still proves the host answered.
        for port in self.tcp_ports:
            writer = None
            try:
                _reader, writer = await asyncio.open_connection(host=address, port=port)
                return True
            except ConnectionRefusedError:
                return True
            except OSError:
                continue
            finally:
                if writer is not None:
                    writer.close()
                    try:
                        await writer.wait_closed()
                    except OSError:
                        pass
        return False
