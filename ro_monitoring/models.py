from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class EndpointClass(str, Enum):
    PRIMARY = "Primary"
    SECONDARY = "Secondary"


class SiteStatus(str, Enum):
    HEALTHY = "Healthy"
    PARTIAL = "Partial"
    OFFLINE = "Offline"


@dataclass(frozen=True)
class Endpoint:
    address: str
    endpoint_class: EndpointClass


@dataclass(frozen=True)
class Site:
    code: str
    primary_endpoint: str
    # None means the site is single-homed.
    secondary_endpoint: str | None = None
    city: str = ""
    state: str = ""
    region: str = ""

    def __post_init__(self) -> None:
        if not self.code:
            raise ValueError("Site code must not be empty")
        if not self.primary_endpoint:
            raise ValueError(f"Site {self.code} has no primary endpoint")
        if self.secondary_endpoint is not None and not self.secondary_endpoint.strip():
            object.__setattr__(self, "secondary_endpoint", None)

    @property
    def is_dual_homed(self) -> bool:
        return self.secondary_endpoint is not None

    def endpoints(self) -> list[Endpoint]:
        out = [Endpoint(self.primary_endpoint, EndpointClass.PRIMARY)]
        if self.secondary_endpoint is not None:
            out.append(Endpoint(self.secondary_endpoint, EndpointClass.SECONDARY))
        return out

    def address_for(self, endpoint_class: EndpointClass) -> str:
        if endpoint_class is EndpointClass.SECONDARY and self.secondary_endpoint is not None:
            return self.secondary_endpoint
        return self.primary_endpoint


@dataclass(frozen=True)
class ProbeOutcome:
    reachable: bool
    endpoint_class: EndpointClass


@dataclass(frozen=True)
class Incident:
    site_code: str
    endpoint_address: str
    endpoint_class: EndpointClass
    timestamp: datetime
    site_status: SiteStatus
    city: str
    state: str
    region: str
    bandwidth_mbps: float

    def __post_init__(self) -> None:
        if self.site_status is SiteStatus.HEALTHY:
            raise ValueError("Incidents are only recorded for PARTIAL or OFFLINE sites")

    @classmethod
    def for_site(
        cls,
        site: Site,
        *,
        status: SiteStatus,
        failing: EndpointClass,
        timestamp: datetime,
        bandwidth_mbps: float,
    ) -> Incident:
        return cls(
            site_code=site.code,
            endpoint_address=site.address_for(failing),
            endpoint_class=failing,
            timestamp=timestamp,
            site_status=status,
            city=site.city,
            state=site.state,
            region=site.region,
            bandwidth_mbps=float(bandwidth_mbps),
        )
