from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable

from ro_monitoring.models import EndpointClass, SiteStatus


DEFAULT_THRESHOLD_CYCLES = 5
EMIT_POLICIES = ("every_cycle", "once_per_outage")


def classify(primary_reachable: bool, secondary_reachable: bool | None) -> SiteStatus:
    """``secondary_reachable=None`` means the site is single-homed."""
    if primary_reachable and (secondary_reachable is None or secondary_reachable):
        return SiteStatus.HEALTHY
    # OFFLINE needs a secondary that exists and is also down.
    if not primary_reachable and secondary_reachable is False:
        return SiteStatus.OFFLINE
    return SiteStatus.PARTIAL


def failing_endpoint(primary_reachable: bool) -> EndpointClass:
    return EndpointClass.SECONDARY if primary_reachable else EndpointClass.PRIMARY


@dataclass
class SiteTrackerEntry:
    consecutive_unhealthy_cycles: int = 0
    last_incident_emitted_cycle: int | None = None
    last_status: SiteStatus | None = None


@dataclass(frozen=True)
class CycleResult:
    classification: SiteStatus
    threshold_crossed: bool
    failing: EndpointClass | None
    unhealthy_cycles: int


class SiteStateTracker:
    """Per-site consecutive-failure counters. Does no I/O.

    Owned by the scheduler and only mutated from its sequential reduction phase,
    so there is no locking here.
    """

    def __init__(
        self,
        threshold_cycles: int = DEFAULT_THRESHOLD_CYCLES,
        *,
        emit_policy: str = "every_cycle",
        reminder_cycles: int | None = None,
    ):
        if int(threshold_cycles) < 1:
            raise ValueError("threshold_cycles must be >= 1")
        if emit_policy not in EMIT_POLICIES:
            raise ValueError(f"Unknown emit policy: {emit_policy}")
        if reminder_cycles is not None and int(reminder_cycles) < 1:
            raise ValueError("reminder_cycles must be >= 1 when set")
        self.threshold_cycles = int(threshold_cycles)
        self.emit_policy = emit_policy
        self.reminder_cycles = int(reminder_cycles) if reminder_cycles is not None else None
        self._entries: dict[str, SiteTrackerEntry] = {}

    def __contains__(self, site_code: str) -> bool:
        return site_code in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def codes(self) -> set[str]:
        return set(self._entries)

    def entry(self, site_code: str) -> SiteTrackerEntry | None:
        entry = self._entries.get(site_code)
        if entry is None:
            return None
        return SiteTrackerEntry(
            consecutive_unhealthy_cycles=entry.consecutive_unhealthy_cycles,
            last_incident_emitted_cycle=entry.last_incident_emitted_cycle,
            last_status=entry.last_status,
        )

    def restore(self, site_code: str, entry: SiteTrackerEntry | None) -> None:
        """Put back an entry previously returned by :meth:`entry` (``None`` forgets the site)."""
        if entry is None:
            self._entries.pop(site_code, None)
        else:
            self._entries[site_code] = replace(entry)

    def retain(self, site_codes: Iterable[str]) -> list[str]:
        """Drop entries for sites no longer in the inventory. Returns the dropped codes."""
        keep = set(site_codes)
        dropped = [code for code in self._entries if code not in keep]
        for code in dropped:
            del self._entries[code]
        return dropped

    def record_cycle(
        self,
        site_code: str,
        primary_reachable: bool,
        secondary_reachable: bool | None,
    ) -> CycleResult:
        entry = self._entries.get(site_code)
        if entry is None:
            entry = self._entries[site_code] = SiteTrackerEntry()

        status = classify(bool(primary_reachable), secondary_reachable)
        entry.last_status = status
        if status is SiteStatus.HEALTHY:
            entry.consecutive_unhealthy_cycles = 0
            entry.last_incident_emitted_cycle = None
            return CycleResult(
                classification=status,
                threshold_crossed=False,
                failing=None,
                unhealthy_cycles=0,
            )

        entry.consecutive_unhealthy_cycles += 1
        return CycleResult(
            classification=status,
            threshold_crossed=entry.consecutive_unhealthy_cycles >= self.threshold_cycles,
            failing=failing_endpoint(bool(primary_reachable)),
            unhealthy_cycles=entry.consecutive_unhealthy_cycles,
        )

    def should_emit(self, site_code: str, cycle: int) -> bool:
        """Apply the emission policy to a site whose threshold is crossed this cycle."""
        entry = self._entries.get(site_code)
        if entry is None or entry.consecutive_unhealthy_cycles < self.threshold_cycles:
            return False
        if self.emit_policy == "every_cycle":
            return True
        last = entry.last_incident_emitted_cycle
        if last is None:
            return True
        if self.reminder_cycles is None:
            return False
        return int(cycle) - int(last) >= self.reminder_cycles

    def mark_emitted(self, site_code: str, cycle: int) -> None:
        entry = self._entries.get(site_code)
        if entry is not None:
            entry.last_incident_emitted_cycle = int(cycle)
