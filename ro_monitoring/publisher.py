from __future__ import annotations

import csv
import threading
from pathlib import Path
from typing import Protocol

import structlog

from ro_monitoring.errors import PublishError
from ro_monitoring.models import Incident


logger = structlog.get_logger(__name__)

INCIDENT_HEADER = (
    "RO code",
    "IP",
    "Network Type",
    "Timestamp",
    "RO Status",
    "City",
    "State",
    "Region",
    "Bandwidth (Mbps)",
)


class IncidentPublisher(Protocol):
    def publish(self, incident: Incident) -> None:
        """Persist one incident. Raise PublishError on I/O failure."""
        ...


def format_bandwidth(mbps: float) -> str:
    value = float(mbps or 0.0)
    if value <= 0.0:
        return "0"
    return f"{value:.2f}"


def incident_row(incident: Incident) -> list[str]:
    return [
        incident.site_code,
        incident.endpoint_address,
        incident.endpoint_class.value,
        incident.timestamp.isoformat(timespec="seconds"),
        incident.site_status.value,
        incident.city,
        incident.state,
        incident.region,
        format_bandwidth(incident.bandwidth_mbps),
    ]


class CsvIncidentPublisher:
    """Appends incidents to a CSV audit log through one long-lived handle.

    The header row is written only when the file is created (or found empty).
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            is_new = not self.path.exists() or self.path.stat().st_size == 0
            self._fh = open(self.path, "a", encoding="utf-8", newline="")
        except OSError as exc:
            raise PublishError(f"cannot open incident log {self.path}: {type(exc).__name__}: {exc}") from exc
        self._writer = csv.writer(self._fh)
        if is_new:
            try:
                self._writer.writerow(INCIDENT_HEADER)
                self._fh.flush()
            except OSError as exc:
                self._fh.close()
                raise PublishError(f"cannot write incident log header {self.path}: {exc}") from exc
            logger.info("Created incident log", path=str(self.path))

    def publish(self, incident: Incident) -> None:
        with self._lock:
            if self._fh.closed:
                raise PublishError(f"incident log {self.path} is closed")
            try:
                self._writer.writerow(incident_row(incident))
                self._fh.flush()
            except OSError as exc:
                raise PublishError(f"{type(exc).__name__}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            if not self._fh.closed:
                self._fh.close()

    def __enter__(self) -> CsvIncidentPublisher:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
