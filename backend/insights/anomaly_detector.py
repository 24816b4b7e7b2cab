"""
Anomaly Detector — z-score scan of daily metric series.
========================================================
Per metric:
  1. Fetch the daily series for the lookback window (bounded by a timeout).
  2. Fewer than 3 points → InsufficientDataError, metric skipped.
  3. Baseline = mean and population std dev of every point but the last.
  4. z = (current - mean) / std; std == 0 → z = 0.
  5. |z| <= threshold → no anomaly.
  6. Severity: |z| > 3 critical, > 2.5 warning, else info.

Metrics run concurrently under a semaphore. One metric failing (fetch error,
timeout, bad data) is logged and skipped; the rest of the batch continues.
All events of a run are persisted in a single insert, then returned sorted
by severity (stable, so ties keep metric order).

Cost: $0 (no LLM).
"""

import asyncio
import logging
import math
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Protocol, Sequence, Union

import app_config
from engine.errors import InsufficientDataError, StorageError
from engine.metric_catalog import MetricCatalog, MetricDefinition
from insights import AnomalyEvent, DailyPoint

logger = logging.getLogger(__name__)

MIN_POINTS = 3

CRITICAL_Z = 3.0
WARNING_Z = 2.5

SEVERITY_RANK = {"critical": 3, "warning": 2, "info": 1}

DEFAULT_ANOMALY_METRICS = (
    "claims_received",
    "cycle_time_e2e",
    "sla_breach_rate",
    "cost_per_claim",
    "reserve_amount",
)


class SeriesStorage(Protocol):
    async def fetch_daily_series(
        self, client_id: str, definition: MetricDefinition, start: date, end: date,
    ) -> list[DailyPoint]: ...

    async def insert_anomaly_events(self, client_id: str, events: list[AnomalyEvent]) -> int: ...


# ── Pure statistics ───────────────────────────────────────────────────────

def compute_baseline(values: Sequence[float]) -> tuple[float, float]:
    """Mean and population standard deviation."""
    if not values:
        raise ValueError("baseline needs at least one value")
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


def classify_severity(abs_z: float) -> str:
    if abs_z > CRITICAL_Z:
        return "critical"
    if abs_z > WARNING_Z:
        return "warning"
    return "info"


def score_series(
    metric_slug: str,
    series: Sequence[Union[float, DailyPoint]],
    threshold: float = 2.0,
    now: Optional[datetime] = None,
) -> Optional[AnomalyEvent]:
    """
    Score the most recent point of a series against the rest.

    Returns the AnomalyEvent, or None when |z| is within the threshold.
    Raises InsufficientDataError for fewer than 3 points.
    """
    values = [float(p.value) if isinstance(p, DailyPoint) else float(p) for p in series]
    if len(values) < MIN_POINTS:
        raise InsufficientDataError(metric_slug, len(values), MIN_POINTS)
    if not all(math.isfinite(v) for v in values):
        raise ValueError(f"series for {metric_slug} contains non-finite values")

    current = values[-1]
    mean, std = compute_baseline(values[:-1])
    z = 0.0 if std == 0 else (current - mean) / std

    if abs(z) <= threshold:
        return None

    return AnomalyEvent(
        metric_slug=metric_slug,
        direction="up" if current > mean else "down",
        z_score=z,
        current_value=current,
        baseline_mean=mean,
        baseline_std_dev=std,
        severity=classify_severity(abs(z)),
        detected_at=now or datetime.now(timezone.utc),
    )


def sort_by_severity(events: list[AnomalyEvent]) -> list[AnomalyEvent]:
    return sorted(events, key=lambda e: SEVERITY_RANK.get(e.severity, 0), reverse=True)


# ── Batch engine ──────────────────────────────────────────────────────────

class AnomalyDetector:
    """
    detector = AnomalyDetector(catalog, storage)
    events = await detector.detect(client_id, metric_slugs=["sla_breach_rate"])
    """

    def __init__(
        self,
        catalog: MetricCatalog,
        storage: Optional[SeriesStorage],
        concurrency: int = app_config.ANOMALY_CONCURRENCY,
        timeout_seconds: float = app_config.FETCH_TIMEOUT_SECONDS,
    ):
        self.catalog = catalog
        self.storage = storage
        self.concurrency = max(1, concurrency)
        self.timeout_seconds = timeout_seconds

    async def detect(
        self,
        client_id: str,
        metric_slugs: Optional[list[str]] = None,
        lookback_days: int = app_config.ANOMALY_LOOKBACK_DAYS,
        threshold: float = app_config.ANOMALY_Z_THRESHOLD,
        today: Optional[date] = None,
        persist: bool = True,
    ) -> list[AnomalyEvent]:
        await self.catalog.ensure_fresh()
        metrics = self._select_metrics(metric_slugs)
        if not metrics:
            logger.info("No metrics to analyse for %s", client_id)
            return []

        end = today or date.today()
        start = end - timedelta(days=lookback_days)
        now = datetime.now(timezone.utc)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run(defn: MetricDefinition) -> Optional[AnomalyEvent]:
            async with semaphore:
                return await self._analyse_metric(client_id, defn, start, end, threshold, now)

        results = await asyncio.gather(*[_run(m) for m in metrics])
        events = [e for e in results if e is not None]

        if events and persist and self.storage is not None:
            try:
                await self.storage.insert_anomaly_events(client_id, events)
            except Exception as e:
                logger.error("Failed to store %d anomaly events for %s: %s", len(events), client_id, e)

        events = sort_by_severity(events)
        logger.info(
            "Anomaly scan for %s: %d metrics analysed, %d anomalies", client_id, len(metrics), len(events)
        )
        return events

    def _select_metrics(self, metric_slugs: Optional[list[str]]) -> list[MetricDefinition]:
        requested = list(metric_slugs) if metric_slugs else list(DEFAULT_ANOMALY_METRICS)
        selected: list[MetricDefinition] = []
        for slug in dict.fromkeys(requested):
            defn = self.catalog.lookup(slug)
            if defn is None:
                if metric_slugs:
                    logger.warning("Skipping unknown metric '%s' in anomaly scan", slug)
                continue
            selected.append(defn)
        return selected

    async def _analyse_metric(
        self,
        client_id: str,
        defn: MetricDefinition,
        start: date,
        end: date,
        threshold: float,
        now: datetime,
    ) -> Optional[AnomalyEvent]:
        if self.storage is None:
            logger.warning("No storage configured; skipping %s", defn.slug)
            return None
        try:
            series = await asyncio.wait_for(
                self.storage.fetch_daily_series(client_id, defn, start, end),
                timeout=self.timeout_seconds,
            )
            series = sorted(series, key=lambda p: p.day)
            return score_series(defn.slug, series, threshold, now)
        except InsufficientDataError as e:
            logger.debug("Skipping %s: %s", defn.slug, e)
        except asyncio.TimeoutError:
            logger.warning("Daily series fetch for %s timed out after %ss", defn.slug, self.timeout_seconds)
        except StorageError as e:
            logger.warning("Daily series fetch for %s failed: %s", defn.slug, e.reason)
        except Exception as e:
            logger.warning("Anomaly analysis failed for %s: %s", defn.slug, e)
        return None
