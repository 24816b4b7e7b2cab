"""
Metric Catalog — TTL-refreshed mapping from metric slug to MetricDefinition.
============================================================================
Rows come from the metric_definitions table (display metadata + allowed
dimension keys). Physical columns and aggregation shape come from the trusted
templates in engine.metric_templates; a row can narrow what a metric exposes
but can never introduce SQL text.

Concurrency
-----------
  - The whole catalog is one immutable _Snapshot. refresh() builds a new one
    and swaps the reference; readers never see a half-built catalog and never
    take the lock.
  - An asyncio.Lock serialises refreshers so an expired TTL triggers a single
    fetch, not one per waiting request.
  - A failed refresh keeps the previous snapshot (stale-but-available). Only a
    failure with no snapshot at all raises StorageError.

Public surface
--------------
    catalog = MetricCatalog(fetch=storage.fetch_metric_definitions)
    await catalog.ensure_fresh()
    defn = catalog.lookup("sla_breach_rate")
    col  = catalog.column_for("sla_breach_rate", "region")      # "c.region"
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Awaitable, Callable, Iterable, Mapping, Optional

import app_config
from engine.errors import StorageError
from engine.metric_templates import (
    DEFAULT_METRIC_ROWS,
    GLOBAL_FILTER_COLUMNS,
    METRIC_TEMPLATES,
    RESULT_SHAPES,
    TABLE,
)

logger = logging.getLogger(__name__)

# After a failed refresh, wait this long before trying storage again
REFRESH_COOLDOWN_SECONDS = 30.0


@dataclass(frozen=True)
class MetricDefinition:
    """Immutable once loaded; replaced wholesale on refresh."""
    slug: str
    display_name: str
    category: str
    unit: str
    result_shape: str                   # "time_series" | "dimensional" | "table"
    default_chart_type: str
    dimensions: Mapping[str, str]       # allowed dimension key → physical column
    filter_columns: Mapping[str, str]   # filterable key → physical column
    description: str = ""
    aggregation: Optional[str] = None   # None when no template backs the slug
    default_dimension: Optional[str] = None

    @property
    def allowed_dimensions(self) -> frozenset[str]:
        return frozenset(self.dimensions)

    @property
    def has_template(self) -> bool:
        return self.slug in METRIC_TEMPLATES


@dataclass(frozen=True)
class _Snapshot:
    metrics: Mapping[str, MetricDefinition]
    refreshed_at: float                 # clock() value
    refreshed_at_utc: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def build_definition(row: dict) -> Optional[MetricDefinition]:
    """Turn one metric_definitions row into a MetricDefinition (None if inactive)."""
    slug = (row.get("slug") or "").strip()
    if not slug or not row.get("is_active", True):
        return None

    template = METRIC_TEMPLATES.get(slug)
    requested = [d for d in (row.get("allowed_dimensions") or []) if isinstance(d, str)]

    if template:
        resolve = template.source.column_for
        filterable = {key: resolve(key) for key in template.source.known_keys()}
        result_shape = template.result_shape
        if template.default_dimension and template.default_dimension not in requested:
            requested.insert(0, template.default_dimension)
    else:
        resolve = GLOBAL_FILTER_COLUMNS.get
        filterable = dict(GLOBAL_FILTER_COLUMNS)
        result_shape = row.get("result_shape") or TABLE

    dimensions: dict[str, str] = {}
    for key in requested:
        column = resolve(key)
        if column is None:
            logger.warning("Metric %s: dropping dimension '%s' with no trusted column", slug, key)
            continue
        dimensions[key] = column

    if result_shape not in RESULT_SHAPES:
        # Kept so the compiler can report it; validation still works
        logger.warning("Metric %s declares unknown result shape '%s'", slug, result_shape)

    return MetricDefinition(
        slug=slug,
        display_name=row.get("display_name") or slug,
        category=row.get("category") or "general",
        unit=row.get("unit") or "count",
        result_shape=result_shape,
        default_chart_type=row.get("default_chart_type") or "bar",
        dimensions=MappingProxyType(dimensions),
        filter_columns=MappingProxyType(filterable),
        description=row.get("description") or "",
        aggregation=template.aggregation if template else None,
        default_dimension=template.default_dimension if template else None,
    )


def build_definitions(rows: Iterable[dict]) -> dict[str, MetricDefinition]:
    metrics: dict[str, MetricDefinition] = {}
    for row in rows:
        defn = build_definition(row)
        if defn is None:
            continue
        if defn.slug in metrics:
            logger.warning("Duplicate metric slug '%s' in catalog rows; keeping first", defn.slug)
            continue
        metrics[defn.slug] = defn
    return metrics


class MetricCatalog:
    """
    In-process metric catalog. Inject one instance per process.

    fetch: async callable returning metric_definitions rows. When omitted the
    catalog serves the built-in DEFAULT_METRIC_ROWS.
    """

    def __init__(
        self,
        fetch: Optional[Callable[[], Awaitable[list[dict]]]] = None,
        rows: Optional[list[dict]] = None,
        ttl_seconds: float = app_config.CATALOG_TTL_SECONDS,
        timeout_seconds: float = app_config.FETCH_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self._ttl = ttl_seconds
        self._timeout = timeout_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._snapshot: Optional[_Snapshot] = None
        self._force_refresh = False
        self._retry_after: float = 0.0

        seed = rows if rows is not None else (None if fetch else DEFAULT_METRIC_ROWS)
        if seed is not None:
            self._snapshot = _Snapshot(MappingProxyType(build_definitions(seed)), clock())

    # ── Readers (lock-free) ──

    def lookup(self, slug: str) -> Optional[MetricDefinition]:
        snap = self._snapshot
        if snap is None or not isinstance(slug, str):
            return None
        return snap.metrics.get(slug)

    def allowed_dimensions(self, slug: str) -> frozenset[str]:
        defn = self.lookup(slug)
        return defn.allowed_dimensions if defn else frozenset()

    def column_for(self, slug: str, dimension_key: str) -> Optional[str]:
        defn = self.lookup(slug)
        if defn is None:
            return None
        return defn.dimensions.get(dimension_key)

    def filter_column_for(self, slug: str, field_name: str) -> Optional[str]:
        """Resolve a filter field through the metric's dimensions, then its source."""
        defn = self.lookup(slug)
        if defn is None:
            return None
        return defn.dimensions.get(field_name) or defn.filter_columns.get(field_name)

    def slugs(self) -> list[str]:
        snap = self._snapshot
        return sorted(snap.metrics) if snap else []

    def definitions(self) -> list[MetricDefinition]:
        snap = self._snapshot
        return list(snap.metrics.values()) if snap else []

    @property
    def last_refreshed(self) -> Optional[datetime]:
        snap = self._snapshot
        return snap.refreshed_at_utc if snap else None

    def is_expired(self) -> bool:
        snap = self._snapshot
        if snap is None or self._force_refresh:
            return True
        return self._clock() - snap.refreshed_at >= self._ttl

    def __contains__(self, slug: object) -> bool:
        return isinstance(slug, str) and self.lookup(slug) is not None

    def __len__(self) -> int:
        snap = self._snapshot
        return len(snap.metrics) if snap else 0

    # ── Refresh ──

    def invalidate(self) -> None:
        """Force the next ensure_fresh() to hit storage."""
        self._force_refresh = True
        self._retry_after = 0.0

    async def ensure_fresh(self) -> "MetricCatalog":
        if not self.is_expired():
            return self
        if self._snapshot is not None and self._clock() < self._retry_after:
            return self
        async with self._lock:
            # Another task may have refreshed while we waited
            if self.is_expired():
                await self._refresh_locked()
        return self

    async def refresh(self) -> bool:
        """Replace the whole catalog. Returns False when stale data is kept."""
        async with self._lock:
            return await self._refresh_locked()

    async def _refresh_locked(self) -> bool:
        try:
            if self._fetch is None:
                rows = DEFAULT_METRIC_ROWS
            else:
                rows = await asyncio.wait_for(self._fetch(), timeout=self._timeout)
            metrics = build_definitions(rows or [])
            if not metrics:
                raise ValueError("no active metric definitions returned")
        except Exception as e:
            reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
            if self._snapshot is None:
                raise StorageError("metric catalog refresh", reason) from e
            self._retry_after = self._clock() + min(self._ttl, REFRESH_COOLDOWN_SECONDS)
            logger.warning("Metric catalog refresh failed (%s); serving stale snapshot", reason)
            return False

        self._snapshot = _Snapshot(MappingProxyType(metrics), self._clock())
        self._force_refresh = False
        self._retry_after = 0.0
        logger.info("Metric catalog refreshed: %d metrics", len(metrics))
        return True
