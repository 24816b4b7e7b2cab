"""
Scheduled anomaly scan for one client.

Usage:
    python scripts/run_anomaly_scan.py --client-id <uuid>
    python scripts/run_anomaly_scan.py --client-id <uuid> --metrics sla_breach_rate,cost_per_claim \
        --lookback-days 60 --threshold 2.5 --dry-run
    python scripts/run_anomaly_scan.py --client-id <uuid> --alerts --seed-rules
"""

import argparse
import asyncio
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import app_config  # noqa: E402
from claims_storage import SupabaseStorage  # noqa: E402
from engine.errors import StorageError  # noqa: E402
from engine.metric_catalog import MetricCatalog  # noqa: E402
from insights.alert_rules import check_alerts  # noqa: E402
from insights.anomaly_detector import AnomalyDetector  # noqa: E402

logger = logging.getLogger("run_anomaly_scan")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Detect metric anomalies for one client.")
    parser.add_argument("--client-id", required=True, help="Client UUID to scan")
    parser.add_argument(
        "--metrics", default="",
        help="Comma-separated metric slugs (default: the standard anomaly set)",
    )
    parser.add_argument("--lookback-days", type=int, default=app_config.ANOMALY_LOOKBACK_DAYS)
    parser.add_argument("--threshold", type=float, default=app_config.ANOMALY_Z_THRESHOLD)
    parser.add_argument("--dry-run", action="store_true", help="Detect without storing events")
    parser.add_argument("--alerts", action="store_true", help="Also evaluate the client's alert rules")
    parser.add_argument(
        "--seed-rules", action="store_true",
        help="With --alerts: store the default rules when the client has none",
    )
    return parser


async def run(args: argparse.Namespace) -> int:
    storage = SupabaseStorage()
    catalog = MetricCatalog(fetch=storage.fetch_metric_definitions)
    detector = AnomalyDetector(catalog, storage)

    slugs = [s.strip() for s in args.metrics.split(",") if s.strip()] or None
    try:
        events = await detector.detect(
            args.client_id,
            metric_slugs=slugs,
            lookback_days=args.lookback_days,
            threshold=args.threshold,
            persist=not args.dry_run,
        )
    except StorageError as e:
        logger.error("Anomaly scan aborted: %s", e)
        return 1

    if not events:
        print("No anomalies detected.")
    for event in events:
        print(
            f"[{event.severity.upper():8}] {event.metric_slug:<24} {event.direction:<4} "
            f"z={event.z_score:+.2f} current={event.current_value:g} "
            f"baseline={event.baseline_mean:g}±{event.baseline_std_dev:g}"
        )

    if args.alerts:
        try:
            alerts = await check_alerts(
                args.client_id, catalog, storage,
                seed_missing=args.seed_rules and not args.dry_run,
            )
        except StorageError as e:
            logger.error("Alert rule check aborted: %s", e)
            return 1
        if not alerts:
            print("No alert rules fired.")
        for alert in alerts:
            print(f"[{alert.severity.upper():8}] ALERT {alert.title}: {alert.summary}")
    return 0


def main(argv=None) -> int:
    app_config.configure_logging()
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
