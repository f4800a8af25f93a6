from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, Protocol

import structlog

from ro_monitoring.errors import InventoryError
from ro_monitoring.models import Site


logger = structlog.get_logger(__name__)

INVENTORY_FIELDS = ("code", "primary_ip", "secondary_ip", "city", "state", "region")
_HEADER_CODES = {"code", "ro code", "ro_code", "rocode"}


class InventorySource(Protocol):
    def snapshot(self) -> list[Site]:
        """Return the current sites, unique by code. Raise InventoryError on failure."""
        ...


def coalesce_sites(sites: Iterable[Site], *, source: str = "inventory") -> list[Site]:
    """First occurrence of a code wins; later duplicates are dropped with a warning."""
    seen: dict[str, Site] = {}
    for site in sites:
        if site.code in seen:
            logger.warning("Duplicate site code skipped", source=source, code=site.code)
            continue
        seen[site.code] = site
    return list(seen.values())


def parse_inventory_row(row: list[str]) -> Site:
    fields = [str(f or "").strip() for f in row]
    if len(fields) < len(INVENTORY_FIELDS):
        raise ValueError(f"expected {len(INVENTORY_FIELDS)} fields, got {len(fields)}")
    code, primary, secondary, city, state, region = fields[: len(INVENTORY_FIELDS)]
    return Site(
        code=code,
        primary_endpoint=primary,
        secondary_endpoint=secondary or None,
        city=city,
        state=state,
        region=region,
    )


class StaticInventorySource:
    def __init__(self, sites: Iterable[Site]):
        self._sites = coalesce_sites(sites, source="static")

    def snapshot(self) -> list[Site]:
        return list(self._sites)


class CsvInventorySource:
    """Reads ``code, primary_ip, secondary_ip, city, state, region`` rows.

    Records with fewer than six fields, or with an empty code / primary address, are
    skipped with a warning rather than failing the whole snapshot. A missing or
    unreadable file fails the snapshot. An optional header row, blank lines and
    ``#`` comment lines are ignored.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def snapshot(self) -> list[Site]:
        try:
            with open(self.path, "r", encoding="utf-8-sig", newline="") as f:
                rows = list(csv.reader(f))
        except (OSError, UnicodeDecodeError, csv.Error) as exc:
            raise InventoryError(f"cannot read inventory {self.path}: {type(exc).__name__}: {exc}") from exc

        sites: list[Site] = []
        seen_record = False
        for lineno, row in enumerate(rows, start=1):
            if not row or not any(str(f).strip() for f in row):
                continue
            first = str(row[0]).strip()
            if first.startswith("#"):
                continue
            # Only the first record may be a header.
            if not seen_record:
                seen_record = True
                if first.lower() in _HEADER_CODES:
                    continue
            try:
                sites.append(parse_inventory_row(row))
            except ValueError as exc:
                logger.warning("Skipping inventory record", path=str(self.path), line=lineno, error=str(exc))
        return coalesce_sites(sites, source=str(self.path))
