#!/usr/bin/env python3
"""
Meter Collector - Entry Point

Polls BACnet/IP meters on a fixed interval and stores readings locally
for the upload agent.

Usage:
    meter-collector                    # Start with default config
    meter-collector --config my.yaml   # Use custom config file
    meter-collector --dry-run          # Validate config, load meters and exit
    meter-collector --verbose          # Enable debug logging
"""

import argparse
import asyncio
import sys

from meter_collector import __version__
from meter_collector.common.config import CollectorConfig, load_config_file
from meter_collector.common.exceptions import ConfigError
from meter_collector.common.logging_setup import configure_from_env, setup_logging
from meter_collector.services.collection.service import CollectionService


def print_startup_banner(config: CollectorConfig, config_path: str | None) -> None:
    """Print startup information."""
    collection = config.collection
    print()
    print("=" * 60)
    print(f"  METER COLLECTOR v{__version__}")
    print("=" * 60)
    print()
    print(f"  Config file:       {config_path or 'auto-detected / defaults'}")
    print(f"  Config store:      {config.store.backend.value}")
    print(f"  Database:          {config.store.db_path}")
    print(f"  Interval:          {collection.interval_seconds:.0f}s")
    print(f"  Batch timeout:     {collection.batch_read_timeout_ms}ms")
    print(f"  Sequential timeout:{collection.sequential_read_timeout_ms:>6}ms")
    print(f"  Concurrent meters: {collection.max_concurrent_devices}")
    print(f"  BACnet stack:      {config.bacnet.interface}:{config.bacnet.port}")
    print(f"  Health endpoint:   http://{config.service.health_host}:{config.service.health_port}/health")
    print()
    print("=" * 60)
    print()


async def dry_run(config: CollectorConfig) -> int:
    """Load the meter configuration once and print the summary"""
    service = CollectionService(config)
    try:
        error = await service.cache.reload()
        if error is not None:
            print(f"Configuration store unavailable: {error.message}")
            return 1

        summary = service.cache.get_configuration_summary()
        print(f"Meters: {summary.total} ({summary.with_registers} with registers)")
        for gap in summary.gaps:
            print(f"  - device {gap.device_id} ({', '.join(gap.meter_ids)}): {gap.reason}")
        report = service.cache.last_load_report
        if report and report.dropped:
            print(f"Dropped rows: {len(report.dropped)}")
        return 0
    finally:
        await service.cache.close()


async def main_async(config: CollectorConfig) -> None:
    service = CollectionService(config)
    await service.run()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="BACnet meter collection agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    meter-collector                    # Start with default config
    meter-collector --config my.yaml   # Use custom config file
    meter-collector --dry-run          # Validate config and exit
    meter-collector -v                 # Enable debug logging
        """,
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to configuration file (default: first of /etc/meter-collector, "
             "/opt/meter-collector, ./config.yaml)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration, load meters and exit without collecting",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"meter-collector {__version__}",
    )

    args = parser.parse_args(argv)

    try:
        config = load_config_file(args.config)
    except ConfigError as e:
        print(f"Invalid configuration: {e}")
        return 1

    # Plain text in verbose/debug mode
    if args.verbose:
        setup_logging("DEBUG", json_format=False)
    else:
        configure_from_env(config.service.log_level)

    print_startup_banner(config, args.config)

    if args.dry_run:
        return asyncio.run(dry_run(config))

    print("Starting collection...")
    print("Press Ctrl+C to stop")
    print()

    try:
        asyncio.run(main_async(config))
    except KeyboardInterrupt:
        print("\nStopped by user")
    except Exception as e:
        print(f"\nFatal error: {e}")
        return 1
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
