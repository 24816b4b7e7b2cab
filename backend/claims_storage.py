"""
Claims Storage — Supabase collaborator for the catalog, query execution and
anomaly persistence.

Uses the Supabase REST client. Every call is synchronous under the hood and
MUST go through `_db(fn)`, which runs it in a thread pool via
asyncio.to_thread(). Failures surface as StorageError; retry policy lives in
the caller, not here.

Tables / RPCs:
  metric_definitions    catalog rows (read)
  alert_rules           per-client threshold rules (read, seed)
  anomaly_events        append-only anomaly log (insert)
  exec_metric_query     RPC: runs a compiled template with its named params
"""

import asyncio
import json
import logging
from datetime import date, timedelta
from typing import Optional

import app_config
from engine.errors import CompilationError, StorageError
from engine.metric_catalog import MetricDefinition
from engine.query_compiler import QueryDescriptor, compile_daily_series
from insights import AnomalyEvent, DailyPoint

logger = logging.getLogger(__name__)

METRIC_QUERY_RPC = "exec_metric_query"

ZERO_FILLED_AGGREGATIONS = frozenset({"count", "sum"})

# Lazy-init Supabase client
_supabase_client = None


def _get_supabase():
    """Lazy-initialize the shared Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if not app_config.STORAGE_CONFIGURED:
            raise StorageError("connect", "SUPABASE_URL / SUPABASE_SERVICE_KEY are not set")
        from supabase import create_client
        _supabase_client = create_client(
            app_config.SUPABASE_URL.strip(),
            app_config.SUPABASE_KEY.strip(),
        )
    return _supabase_client


async def _db(fn):
    """Run a synchronous Supabase call in a thread pool to avoid blocking the event loop."""
    return await asyncio.to_thread(fn)


def _rows(result) -> list[dict]:
    rows = result.data if result.data else []
    # RPC returns JSONB as a string sometimes
    if isinstance(rows, str):
        rows = json.loads(rows)
    return rows


def _to_float(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class SupabaseStorage:
    """
    storage = SupabaseStorage()              # client from app_config
    catalog = MetricCatalog(fetch=storage.fetch_metric_definitions)
    """

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = _get_supabase()
        return self._client

    # ── Catalog ──

    async def fetch_metric_definitions(self) -> list[dict]:
        try:
            result = await _db(lambda: self.client.table("metric_definitions").select("*").eq(
                "is_active", True
            ).execute())
        except StorageError:
            raise
        except Exception as e:
            raise StorageError("fetch metric_definitions", str(e)) from e
        return _rows(result)

    # ── Query execution ──

    async def run_query(self, descriptor: QueryDescriptor) -> list[dict]:
        """Execute a compiled template; params travel separately from the SQL."""
        try:
            result = await _db(lambda: self.client.rpc(METRIC_QUERY_RPC, {
                "p_query": descriptor.sql,
                "p_params": descriptor.params,
            }).execute())
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(METRIC_QUERY_RPC, str(e), descriptor.metric_slug) from e
        return _rows(result)

    async def fetch_daily_series(
        self,
        client_id: str,
        definition: MetricDefinition,
        start: date,
        end: date,
    ) -> list[DailyPoint]:
        try:
            descriptor = compile_daily_series(definition, client_id, start, end)
        except CompilationError as e:
            raise StorageError("fetch daily series", e.reason, definition.slug) from e

        by_day: dict[date, float] = {}
        for row in await self.run_query(descriptor):
            value = _to_float(row.get("value"))
            label = row.get("label")
            if value is None or not label:
                continue
            by_day[date.fromisoformat(str(label)[:10])] = value

        # A day with no rows is zero claims for counts and sums; averages and
        # ratios are undefined there and stay out of the series.
        if definition.aggregation in ZERO_FILLED_AGGREGATIONS:
            day = start
            while day <= end:
                by_day.setdefault(day, 0.0)
                day += timedelta(days=1)

        return [DailyPoint(day=day, value=value) for day, value in sorted(by_day.items())]

    # ── Anomalies ──

    async def insert_anomaly_events(self, client_id: str, events: list[AnomalyEvent]) -> int:
        """One batched insert for the whole run."""
        if not events:
            return 0
        records = [e.to_record(client_id) for e in events]
        try:
            await _db(lambda: self.client.table("anomaly_events").insert(records).execute())
        except StorageError:
            raise
        except Exception as e:
            raise StorageError("insert anomaly_events", str(e)) from e
        logger.info("Stored %d anomaly events for %s", len(records), client_id)
        return len(records)

    # ── Alert rules ──

    async def fetch_alert_rules(self, client_id: str) -> list[dict]:
        try:
            result = await _db(lambda: self.client.table("alert_rules").select("*").eq(
                "client_id", client_id
            ).eq("is_active", True).execute())
        except StorageError:
            raise
        except Exception as e:
            raise StorageError("fetch alert_rules", str(e)) from e
        return _rows(result)

    async def insert_alert_rules(self, rows: list[dict]) -> int:
        if not rows:
            return 0
        try:
            await _db(lambda: self.client.table("alert_rules").insert(rows).execute())
        except StorageError:
            raise
        except Exception as e:
            raise StorageError("insert alert_rules", str(e)) from e
        return len(rows)
