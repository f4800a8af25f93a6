from __future__ import annotations


class MonitorError(Exception):
    """Base class for errors raised by the RO monitor."""


class ConfigError(MonitorError):
    pass


class InventoryError(MonitorError):
    """The inventory snapshot could not be produced."""


class PublishError(MonitorError):
    """An incident record could not be persisted."""


class BandwidthError(MonitorError):
    """A bandwidth sample could not be taken."""
