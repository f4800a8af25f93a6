from __future__ import annotations

import argparse
import asyncio
import os
import signal
from typing import Any

import httpx
import structlog

from ro_monitoring.bandwidth import BandwidthSampler
from ro_monitoring.config import MonitorConfig, load_config
from ro_monitoring.errors import ConfigError, InventoryError, PublishError
from ro_monitoring.inventory import CsvInventorySource
from ro_monitoring.logging_setup import configure_logging
from ro_monitoring.prober import ReachabilityProber, ping_available
from ro_monitoring.publisher import CsvIncidentPublisher
from ro_monitoring.scheduler import MonitorScheduler
from ro_monitoring.tracker import SiteStateTracker


logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_INVENTORY = 3
EXIT_PUBLISHER = 4


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Retail outlet network monitor")
    parser.add_argument(
        "--config",
        default=os.getenv("RO_MONITOR_CONFIG"),
        help="Path to YAML config (default: $RO_MONITOR_CONFIG or config/ro_monitor.yaml)",
    )
    parser.add_argument("--inventory", help="Inventory CSV (overrides inventory_path)")
    parser.add_argument("--incident-log", help="Incident CSV (overrides incident_log_path)")
    parser.add_argument("--bandwidth-url", help="Reference payload URL (overrides bandwidth_test_url)")
    parser.add_argument("--once", action="store_true", help="Run one check cycle and exit")
    parser.add_argument("--cycles", type=_positive_int, default=None, help="Run N cycles and exit")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    return parser


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_stop(signame: str) -> None:
        if not stop.is_set():
            logger.info("Shutdown requested; finishing current cycle", signal=signame)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig.name)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform's event loop.
            pass


async def run_monitor(
    config: MonitorConfig,
    inventory: CsvInventorySource,
    publisher: CsvIncidentPublisher,
    *,
    max_cycles: int | None = None,
) -> int:
    stop = asyncio.Event()
    _install_signal_handlers(stop)

    async with httpx.AsyncClient(timeout=None) as http_client:
        scheduler = MonitorScheduler(
            inventory=inventory,
            prober=ReachabilityProber(config.probe_method, config.tcp_probe_ports),
            sampler=BandwidthSampler(http_client),
            tracker=SiteStateTracker(
                config.threshold_cycles,
                emit_policy=config.emit_policy,
                reminder_cycles=config.reminder_cycles,
            ),
            publisher=publisher,
            config=config,
        )
        await scheduler.run_forever(stop, max_cycles=max_cycles)
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    overrides: dict[str, Any] = {
        "inventory_path": args.inventory,
        "incident_log_path": args.incident_log,
        "bandwidth_test_url": args.bandwidth_url,
        "log_level": args.log_level,
    }
    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as exc:
        configure_logging(args.log_level or "INFO")
        logger.error("Invalid configuration", error=str(exc))
        return EXIT_CONFIG

    configure_logging(config.log_level, config.log_format)

    if config.probe_method == "icmp" and not ping_available():
        logger.warning("ping executable not found; every icmp probe will report unreachable")

    inventory = CsvInventorySource(config.inventory_path)
    try:
        sites = inventory.snapshot()
    except InventoryError as exc:
        logger.error("Inventory source unusable", path=config.inventory_path, error=str(exc))
        return EXIT_INVENTORY

    try:
        publisher = CsvIncidentPublisher(config.incident_log_path)
    except PublishError as exc:
        logger.error("Incident log unwritable", path=config.incident_log_path, error=str(exc))
        return EXIT_PUBLISHER

    max_cycles = 1 if args.once else args.cycles
    logger.info(
        "RO monitor starting",
        sites=len(sites),
        interval_seconds=config.cycle_interval_seconds,
        threshold_cycles=config.threshold_cycles,
        probe_method=config.probe_method,
        emit_policy=config.emit_policy,
        bandwidth_test_url=config.bandwidth_test_url,
    )
    try:
        return asyncio.run(run_monitor(config, inventory, publisher, max_cycles=max_cycles))
    except KeyboardInterrupt:
        return EXIT_OK
    finally:
        publisher.close()


if __name__ == "__main__":
    raise SystemExit(main())
