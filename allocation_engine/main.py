"""Command-line entry point: run an allocation query and print the JSON response."""

import argparse
import json
import sys

from .api import handle_allocation_request
from .config_loader import get_config
from .db_adapter import PostgresPricingStore, TimescaleMetricsStore
from .parquet_reader import ParquetReader
from .pricing import ConfigPricingStore, PricingResolver
from .service import AllocationService
from .utils import PerformanceTimer, format_duration, get_logger, setup_logging


def build_query(args) -> dict:
    """Map CLI arguments onto API query parameters."""
    query = {
        "window": args.window,
        "aggregate": args.aggregate,
        "accumulate": args.accumulate,
        "filter": args.filter or [],
    }
    if args.step:
        query["step"] = args.step
    if args.idle:
        query["idle"] = "true"
    if args.share_idle:
        query["shareIdle"] = args.share_idle
    if args.offset is not None:
        query["offset"] = str(args.offset)
    if args.limit is not None:
        query["limit"] = str(args.limit)
    return query


def build_pricing(config: dict) -> PricingResolver:
    store_type = config.get("pricing", {}).get("store", "config")
    if store_type == "postgres":
        store = PostgresPricingStore(config)
    else:
        store = ConfigPricingStore(config)
    return PricingResolver.from_config(config, store=store)


def run(args, config, logger) -> int:
    """Run one allocation query.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    pricing = build_pricing(config)
    pricing_store = pricing.store

    if args.source == "parquet":
        metrics_store = ParquetReader(config).load_metrics_store(args.tenant)
    else:
        metrics_store = TimescaleMetricsStore(config)

    try:
        service = AllocationService(config, metrics_store, pricing=pricing)
        with PerformanceTimer(f"Allocation request ({args.view})", logger) as timer:
            status, body = handle_allocation_request(service, args.tenant, build_query(args), args.view)
    finally:
        if isinstance(metrics_store, TimescaleMetricsStore):
            metrics_store.disconnect()
        if isinstance(pricing_store, PostgresPricingStore):
            pricing_store.disconnect()

    print(json.dumps(body, indent=2 if args.pretty else None, default=str))
    logger.info("Request finished", status=status, duration=format_duration(timer.duration_seconds or 0.0))
    return 0 if status == 200 else 1


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Kubernetes cost allocation engine")
    parser.add_argument("--config", "-c", help="Path to config.yaml")
    parser.add_argument("--tenant", "-t", required=True, help="Tenant identifier")
    parser.add_argument("--window", "-w", default="24h", help="Window: 24h, 7d, today, lastweek, 2024-01-01,2024-01-07")
    parser.add_argument("--aggregate", "-a", default="namespace", help="Comma-separated dimensions, e.g. cluster,label:team")
    parser.add_argument("--step", default="", help="Step size: 1h, 1d, daily, weekly")
    parser.add_argument("--accumulate", default="true", help="true, false, hour, day or week")
    parser.add_argument("--idle", action="store_true", help="Include idle capacity cost")
    parser.add_argument("--share-idle", default="", choices=["", "true", "false", "weighted"], help="Idle sharing mode")
    parser.add_argument("--filter", "-f", action="append", help="Filter, e.g. namespace:prod or label:team=a (repeatable)")
    parser.add_argument("--offset", type=int, help="Pagination offset")
    parser.add_argument("--limit", type=int, help="Pagination limit")
    parser.add_argument("--view", default="allocation", choices=["allocation", "summary", "topline"])
    parser.add_argument("--source", default="timescale", choices=["timescale", "parquet"], help="Metrics source")
    parser.add_argument("--pretty", action="store_true", help="Indent JSON output")

    args = parser.parse_args()

    try:
        config = get_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    log_config = config.get("logging", {})
    setup_logging(level=log_config.get("level", "INFO"), log_format=log_config.get("format", "console"))
    logger = get_logger("main")

    try:
        exit_code = run(args, config, logger)
    except Exception as e:
        logger.error("Allocation run failed", error=str(e))
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
