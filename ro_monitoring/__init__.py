"""Retail-outlet network monitor: probes site uplinks and logs sustained outages."""

__version__ = "0.1.0"
