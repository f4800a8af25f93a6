from __future__ import annotations

from datetime import datetime, timezone

import pytest

from ro_monitoring.config import MonitorConfig
from ro_monitoring.errors import BandwidthError, PublishError
from ro_monitoring.inventory import StaticInventorySource
from ro_monitoring.models import Incident, Site
from ro_monitoring.scheduler import MonitorScheduler
from ro_monitoring.tracker import SiteStateTracker


FIXED_NOW = datetime(2024, 9, 1, 10, 30, 0, tzinfo=timezone.utc)


class ScriptedProber:
    """Answers from a per-address table the test rewrites between cycles."""

    def __init__(self, table: dict[str, bool] | None = None):
        self.table: dict[str, bool] = dict(table or {})
        self.calls: list[tuple[str, float]] = []

    async def probe(self, address: str, deadline_seconds: float) -> bool:
        self.calls.append((address, deadline_seconds))
        return self.table.get(address, True)


class FakeSampler:
    def __init__(self, mbps: float = 12.5, *, fail: bool = False):
        self.mbps = mbps
        self.fail = fail
        self.calls: list[str] = []

    async def sample(self, url: str, *, timeout_seconds: float | None = None) -> float:
        self.calls.append(url)
        if self.fail:
            raise BandwidthError("connection reset")
        return self.mbps


class MemoryPublisher:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.incidents: list[Incident] = []
        self.attempts = 0

    def publish(self, incident: Incident) -> None:
        self.attempts += 1
        if self.fail:
            raise PublishError("disk full")
        self.incidents.append(incident)


def make_scheduler(
    sites: list[Site],
    prober: ScriptedProber,
    *,
    threshold: int = 3,
    sampler: FakeSampler | None = None,
    publisher: MemoryPublisher | None = None,
    inventory=None,
    **config_kwargs,
) -> MonitorScheduler:
    config_kwargs.setdefault("bandwidth_test_url", "http://speed.test/1MB.bin")
    config_kwargs.setdefault("cycle_interval_seconds", 1.0)
    config = MonitorConfig(threshold_cycles=threshold, **config_kwargs)
    return MonitorScheduler(
        inventory=inventory or StaticInventorySource(sites),
        prober=prober,
        sampler=sampler or FakeSampler(),
        tracker=SiteStateTracker(
            config.threshold_cycles,
            emit_policy=config.emit_policy,
            reminder_cycles=config.reminder_cycles,
        ),
        publisher=publisher or MemoryPublisher(),
        config=config,
        now=lambda: FIXED_NOW,
    )


@pytest.fixture
def dual_site() -> Site:
    return Site(
        code="R1",
        primary_endpoint="10.0.0.1",
        secondary_endpoint="10.0.0.2",
        city="Pune",
        state="Maharashtra",
        region="West",
    )


@pytest.fixture
def single_site() -> Site:
    return Site(code="R1", primary_endpoint="10.0.0.1", city="Indore", state="Madhya Pradesh", region="Central")
