"""Configuration management for the RO monitor."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ro_monitoring.errors import ConfigError


DEFAULT_CONFIG_PATH = "config/ro_monitor.yaml"


class MonitorConfig(BaseModel):
    """Main configuration for the RO monitor."""

    # Scheduling
    cycle_interval_seconds: float = Field(default=60.0, gt=0, description="Time between cycle starts")
    cycle_deadline_fraction: float = Field(
        default=0.8, gt=0, le=1, description="Share of the interval a cycle may spend probing"
    )

    # Probing
    probe_deadline_ms: int = Field(default=10000, gt=0, description="Per-probe reachability deadline")
    probe_method: str = Field(default="icmp", description="icmp (ping) or tcp (connect)")
    tcp_probe_ports: list[int] = Field(default_factory=lambda: [7, 80, 443], description="Ports for tcp probes")
    max_in_flight_probes: int = Field(default=64, ge=1, description="Parallel probe cap")

    # Incident emission
    threshold_cycles: int = Field(default=5, ge=1, description="Consecutive unhealthy cycles before emission")
    emit_policy: str = Field(default="every_cycle", description="every_cycle or once_per_outage")
    reminder_cycles: Optional[int] = Field(
        default=None, ge=1, description="Re-emit every N cycles while an outage persists (once_per_outage)"
    )

    # Bandwidth
    bandwidth_test_url: Optional[str] = Field(default=None, description="Reference payload for bandwidth samples")
    bandwidth_timeout_seconds: Optional[float] = Field(
        default=None, gt=0, description="Sample deadline; defaults to the remaining cycle budget"
    )

    # Collaborators
    inventory_path: str = Field(default="ro_data.csv", description="Inventory CSV")
    reload_inventory_each_cycle: bool = Field(default=True, description="Re-read the inventory every cycle")
    incident_log_path: str = Field(default="logs/network_status_log.csv", description="Incident CSV audit log")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="console or json")

    @field_validator("probe_method")
    @classmethod
    def _check_probe_method(cls, value: str) -> str:
        value = str(value or "").strip().lower()
        if value not in ("icmp", "tcp"):
            raise ValueError("probe_method must be 'icmp' or 'tcp'")
        return value

    @field_validator("emit_policy")
    @classmethod
    def _check_emit_policy(cls, value: str) -> str:
        value = str(value or "").strip().lower()
        if value not in ("every_cycle", "once_per_outage"):
            raise ValueError("emit_policy must be 'every_cycle' or 'once_per_outage'")
        return value

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = str(value or "").strip().lower()
        if value not in ("console", "json"):
            raise ValueError("log_format must be 'console' or 'json'")
        return value

    @field_validator("bandwidth_test_url")
    @classmethod
    def _blank_url_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not str(value).strip():
            return None
        return str(value).strip()

    @model_validator(mode="after")
    def _check_ports(self) -> "MonitorConfig":
        if self.probe_method == "tcp" and not self.tcp_probe_ports:
            raise ValueError("tcp_probe_ports must not be empty when probe_method is 'tcp'")
        return self

    @property
    def probe_deadline_seconds(self) -> float:
        return self.probe_deadline_ms / 1000.0

    @property
    def cycle_deadline_seconds(self) -> float:
        return self.cycle_interval_seconds * self.cycle_deadline_fraction


_ENV_OVERRIDES = {
    "cycle_interval_seconds": "RO_CYCLE_INTERVAL_SECONDS",
    "probe_deadline_ms": "RO_PROBE_DEADLINE_MS",
    "threshold_cycles": "RO_THRESHOLD_CYCLES",
    "bandwidth_test_url": "RO_BANDWIDTH_TEST_URL",
    "max_in_flight_probes": "RO_MAX_IN_FLIGHT_PROBES",
    "inventory_path": "RO_INVENTORY_PATH",
    "incident_log_path": "RO_INCIDENT_LOG_PATH",
    "emit_policy": "RO_EMIT_POLICY",
    "log_level": "LOG_LEVEL",
}


def load_config(config_path: Optional[str] = None, overrides: Optional[dict[str, Any]] = None) -> MonitorConfig:
    """Load configuration from YAML, then environment variables, then explicit overrides."""
    if config_path is None:
        config_path = os.getenv("RO_MONITOR_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: dict[str, Any] = {}

    path = Path(config_path)
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"cannot read config {path}: {exc}") from exc
        if not isinstance(config_data, dict):
            raise ConfigError("Config YAML must be a mapping")

    # Pydantic coerces the string values from the environment.
    for key, env_name in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value is not None:
            config_data[key] = value

    for key, value in (overrides or {}).items():
        if value is not None:
            config_data[key] = value

    try:
        return MonitorConfig(**config_data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
