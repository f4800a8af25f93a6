from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Protocol

import structlog

from ro_monitoring.config import MonitorConfig
from ro_monitoring.errors import BandwidthError, InventoryError, PublishError
from ro_monitoring.inventory import InventorySource
from ro_monitoring.models import Endpoint, EndpointClass, Incident, ProbeOutcome, Site, SiteStatus
from ro_monitoring.publisher import IncidentPublisher
from ro_monitoring.tracker import CycleResult, SiteStateTracker


logger = structlog.get_logger(__name__)

BANDWIDTH_SENTINEL_MBPS = 0.0
MIN_BANDWIDTH_BUDGET_SECONDS = 1.0


class Prober(Protocol):
    async def probe(self, address: str, deadline_seconds: float) -> bool: ...


class Sampler(Protocol):
    async def sample(self, url: str, *, timeout_seconds: float | None = None) -> float: ...


def _local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class CycleReport:
    cycle: int
    skipped: bool = False
    sites: int = 0
    unhealthy: int = 0
    timed_out_probes: int = 0
    site_errors: list[str] = field(default_factory=list)
    incidents: list[Incident] = field(default_factory=list)
    publish_failures: int = 0
    bandwidth_mbps: float | None = None
    elapsed_seconds: float = 0.0


class MonitorScheduler:
    """Runs monitoring cycles back to back at a fixed interval, never two at once.

    Each cycle snapshots the inventory, probes every endpoint in parallel (bounded),
    folds the outcomes into the tracker sequentially, and publishes one incident per
    site whose unhealthy streak has reached the threshold.
    """

    def __init__(
        self,
        *,
        inventory: InventorySource,
        prober: Prober,
        sampler: Sampler,
        tracker: SiteStateTracker,
        publisher: IncidentPublisher,
        config: MonitorConfig | None = None,
        now: Callable[[], datetime] = _local_now,
    ):
        self.inventory = inventory
        self.prober = prober
        self.sampler = sampler
        self.tracker = tracker
        self.publisher = publisher
        self.config = config or MonitorConfig()
        self._now = now
        self._cached_sites: list[Site] | None = None
        self.cycles_run = 0
        self.in_flight_publishes = 0

    async def _snapshot(self) -> list[Site]:
        if self._cached_sites is not None and not self.config.reload_inventory_each_cycle:
            return list(self._cached_sites)
        sites = await asyncio.to_thread(self.inventory.snapshot)
        self._cached_sites = list(sites)
        return list(sites)

    async def _probe_endpoint(self, site: Site, endpoint: Endpoint, semaphore: asyncio.Semaphore) -> bool:
        async with semaphore:
            reachable = await self.prober.probe(endpoint.address, self.config.probe_deadline_seconds)
        level = "debug" if reachable else "info"
        getattr(logger, level)(
            "Endpoint probed",
            site=site.code,
            network=endpoint.endpoint_class.value,
            address=endpoint.address,
            status="UP" if reachable else "DOWN",
        )
        return bool(reachable)

    async def probe_sites(
        self, sites: list[Site], *, deadline_seconds: float
    ) -> tuple[dict[tuple[str, EndpointClass], ProbeOutcome], int]:
        """Probe every endpoint of every site. Probes unfinished at the deadline count as unreachable."""
        endpoints = [(site, endpoint) for site in sites for endpoint in site.endpoints()]
        if not endpoints:
            return {}, 0

        in_flight = max(1, min(len(sites) * 2, int(self.config.max_in_flight_probes)))
        semaphore = asyncio.Semaphore(in_flight)
        tasks: dict[asyncio.Task, tuple[str, EndpointClass]] = {}
        for site, endpoint in endpoints:
            task = asyncio.create_task(self._probe_endpoint(site, endpoint, semaphore))
            tasks[task] = (site.code, endpoint.endpoint_class)

        done, pending = await asyncio.wait(tasks.keys(), timeout=max(0.001, deadline_seconds))
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: dict[tuple[str, EndpointClass], ProbeOutcome] = {}
        for task, key in tasks.items():
            if task in done and not task.cancelled() and task.exception() is None:
                outcomes[key] = ProbeOutcome(reachable=bool(task.result()), endpoint_class=key[1])
            else:
                if task in done and not task.cancelled():
                    logger.warning("Probe task failed", site=key[0], network=key[1].value, error=repr(task.exception()))
                outcomes[key] = ProbeOutcome(reachable=False, endpoint_class=key[1])
        return outcomes, len(pending)

    def _reduce_site(self, site: Site, outcomes: dict[tuple[str, EndpointClass], ProbeOutcome]) -> CycleResult:
        primary = outcomes[(site.code, EndpointClass.PRIMARY)].reachable
        secondary = outcomes[(site.code, EndpointClass.SECONDARY)].reachable if site.is_dual_homed else None
        return self.tracker.record_cycle(site.code, primary, secondary)

    def _draft_incident(self, site: Site, result: CycleResult, cycle: int) -> Incident | None:
        """Incident to publish this cycle, bandwidth still unset, or None when nothing is due."""
        if result.classification is SiteStatus.HEALTHY:
            return None
        if not result.threshold_crossed:
            logger.warning(
                "Site unhealthy (incident suppressed)",
                site=site.code,
                status=result.classification.value,
                unhealthy_cycles=f"{result.unhealthy_cycles}/{self.tracker.threshold_cycles}",
            )
            return None
        if not self.tracker.should_emit(site.code, cycle):
            logger.info(
                "Site still down; incident already recorded for this outage",
                site=site.code,
                status=result.classification.value,
                unhealthy_cycles=result.unhealthy_cycles,
            )
            return None
        return Incident.for_site(
            site,
            status=result.classification,
            failing=result.failing or EndpointClass.PRIMARY,
            timestamp=self._now(),
            bandwidth_mbps=BANDWIDTH_SENTINEL_MBPS,
        )

    async def _sample_bandwidth(self, budget_seconds: float) -> float:
        url = self.config.bandwidth_test_url
        if not url:
            return BANDWIDTH_SENTINEL_MBPS
        timeout = self.config.bandwidth_timeout_seconds
        if timeout is None:
            timeout = max(MIN_BANDWIDTH_BUDGET_SECONDS, budget_seconds)
        try:
            mbps = await self.sampler.sample(url, timeout_seconds=timeout)
        except BandwidthError as exc:
            logger.warning("Bandwidth sample failed; recording sentinel", url=url, error=str(exc))
            return BANDWIDTH_SENTINEL_MBPS
        except Exception as exc:
            logger.warning(
                "Bandwidth sampler crashed; recording sentinel",
                url=url,
                error=f"{type(exc).__name__}: {exc}",
            )
            return BANDWIDTH_SENTINEL_MBPS
        return max(0.0, float(mbps))

    async def _publish(self, incident: Incident) -> bool:
        self.in_flight_publishes += 1
        try:
            await asyncio.to_thread(self.publisher.publish, incident)
            return True
        except PublishError as exc:
            logger.error("Incident dropped: publish failed", site=incident.site_code, error=str(exc))
            return False
        except Exception as exc:
            logger.error(
                "Incident dropped: publisher crashed",
                site=incident.site_code,
                error=f"{type(exc).__name__}: {exc}",
            )
            return False
        finally:
            self.in_flight_publishes -= 1

    async def run_cycle(self, cycle: int) -> CycleReport:
        loop = asyncio.get_running_loop()
        started = loop.time()
        report = CycleReport(cycle=cycle)
        cycle_deadline = self.config.cycle_deadline_seconds

        try:
            sites = await self._snapshot()
        except InventoryError as exc:
            logger.error("Inventory snapshot failed; skipping cycle", cycle=cycle, error=str(exc))
            report.skipped = True
            return report
        except Exception as exc:
            logger.error(
                "Inventory source crashed; skipping cycle",
                cycle=cycle,
                error=f"{type(exc).__name__}: {exc}",
            )
            report.skipped = True
            return report

        report.sites = len(sites)
        dropped = self.tracker.retain(site.code for site in sites)
        if dropped:
            logger.info("Sites left inventory; tracker entries discarded", codes=dropped)

        # The deadline bounds the whole cycle, snapshot included.
        probe_budget = max(0.0, cycle_deadline - (loop.time() - started))
        outcomes, report.timed_out_probes = await self.probe_sites(sites, deadline_seconds=probe_budget)
        if report.timed_out_probes:
            logger.warning(
                "Cycle deadline reached; unfinished probes counted as unreachable",
                cycle=cycle,
                unfinished=report.timed_out_probes,
                deadline_seconds=round(cycle_deadline, 3),
            )

        # Sequential reduction; probes are all settled by now.
        to_emit: list[tuple[Incident, CycleResult]] = []
        for site in sites:
            previous = self.tracker.entry(site.code)
            try:
                result = self._reduce_site(site, outcomes)
                incident = self._draft_incident(site, result, cycle)
            except Exception as exc:
                self.tracker.restore(site.code, previous)
                report.site_errors.append(site.code)
                logger.error(
                    "Site handling failed; skipped this cycle",
                    cycle=cycle,
                    site=site.code,
                    error=f"{type(exc).__name__}: {exc}",
                )
                continue

            if result.classification is not SiteStatus.HEALTHY:
                report.unhealthy += 1
            if incident is not None:
                to_emit.append((incident, result))

        if to_emit:
            remaining = cycle_deadline - (loop.time() - started)
            report.bandwidth_mbps = await self._sample_bandwidth(remaining)

            for incident, result in to_emit:
                incident = replace(incident, bandwidth_mbps=report.bandwidth_mbps)
                logger.warning(
                    "Incident",
                    site=incident.site_code,
                    address=incident.endpoint_address,
                    network=incident.endpoint_class.value,
                    status=incident.site_status.value,
                    unhealthy_cycles=result.unhealthy_cycles,
                    bandwidth_mbps=round(incident.bandwidth_mbps, 3),
                )
                if await self._publish(incident):
                    self.tracker.mark_emitted(incident.site_code, cycle)
                    report.incidents.append(incident)
                else:
                    report.publish_failures += 1

        report.elapsed_seconds = loop.time() - started
        return report

    async def run_forever(self, stop_event: asyncio.Event | None = None, *, max_cycles: int | None = None) -> None:
        """Run cycles until ``stop_event`` is set or ``max_cycles`` have completed.

        A stop request never interrupts a running cycle; it only prevents the next one.
        """
        stop = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        interval = float(self.config.cycle_interval_seconds)
        cycle = 0

        while not stop.is_set():
            cycle += 1
            cycle_started = loop.time()
            report: CycleReport | None = None
            try:
                report = await self.run_cycle(cycle)
            except Exception as exc:
                logger.exception("Cycle crashed", cycle=cycle, error=f"{type(exc).__name__}: {exc}")
            self.cycles_run = cycle

            elapsed = loop.time() - cycle_started
            sleep_for = max(0.0, interval - elapsed)
            logger.info(
                "Cycle complete",
                cycle=cycle,
                skipped=bool(report and report.skipped),
                sites=report.sites if report else 0,
                unhealthy=report.unhealthy if report else 0,
                incidents=len(report.incidents) if report else 0,
                elapsed_seconds=round(elapsed, 3),
                sleep_seconds=round(sleep_for, 3),
            )

            if max_cycles is not None and cycle >= max_cycles:
                break
            if sleep_for <= 0:
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass

        logger.info("Scheduler stopped", cycles=cycle)
