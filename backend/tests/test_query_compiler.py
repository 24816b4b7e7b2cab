"""
Query Compiler tests — parameterised templates from validated intents.
No database needed: templates are checked as text and through sqlglot.
"""

import pytest
import sys, os
from dataclasses import replace
from datetime import date

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from engine.errors import CompilationError
from engine.intent_validator import validate_intent
from engine.metric_catalog import MetricCatalog
from engine.metric_templates import DIMENSIONAL, METRIC_TEMPLATES, TABLE, TIME_SERIES
from engine.query_compiler import (
    QueryDescriptor,
    compile_comparison,
    compile_daily_series,
    compile_query,
    compiler_for,
)
from engine.sql_guard import check_read_only
from sql_helpers import string_literals

CATALOG = MetricCatalog()
TODAY = date(2025, 6, 30)
CLIENT = "00000000-0000-0000-0000-000000000001"
JUNE = {"start": "2025-06-01", "end": "2025-06-30"}

HOSTILE = "x'); DROP TABLE claims; --"


def _validated(payload, catalog=CATALOG):
    ok, err, validated = validate_intent(payload, catalog, today=TODAY)
    assert ok, err
    return validated


def _compile(payload, client_id=CLIENT) -> QueryDescriptor:
    return compile_query(_validated(payload), client_id)


# ── Test: Shapes ──────────────────────────────────────────────────────────

class TestResultShapes:
    def test_table_with_dimensions(self):
        d = _compile({
            "metric": "sla_breach_rate",
            "dimensions": ["region", "adjuster"],
            "time_range": JUNE,
            "time_grain": "week",
        })
        assert d.result_shape == TABLE
        assert d.columns == ("label", "dim_0", "dim_1", "value")
        assert "date_trunc('week', c.fnol_date) AS label" in d.sql
        assert "c.region AS dim_0" in d.sql
        assert "COALESCE(a.full_name, 'Unassigned') AS dim_1" in d.sql
        assert "GROUP BY date_trunc('week', c.fnol_date), c.region, COALESCE(a.full_name, 'Unassigned')" in d.sql
        assert d.sql.endswith("ORDER BY label ASC, dim_0 ASC, dim_1 ASC")

    def test_table_without_dimensions(self):
        d = _compile({"metric": "claims_received"})
        assert d.columns == ("label", "value")
        assert "ORDER BY label ASC" in d.sql

    def test_time_series(self):
        d = _compile({"metric": "high_severity_trend", "time_grain": "month"})
        assert d.result_shape == TIME_SERIES
        assert d.columns == ("label", "value")
        assert "date_trunc('month', c.fnol_date) AS label" in d.sql
        assert "c.severity IN ('high', 'critical')" in d.sql

    def test_dimensional_default_dimension(self):
        d = _compile({"metric": "severity_distribution"})
        assert d.result_shape == DIMENSIONAL
        assert d.columns == ("label", "dimension", "value")
        assert "c.severity AS dimension" in d.sql
        assert "ORDER BY label ASC, dimension ASC" in d.sql

    def test_dimensional_requested_dimension(self):
        d = _compile({"metric": "stage_dwell_time", "dimensions": ["adjuster"]})
        assert "COALESCE(a.full_name, 'Unassigned') AS dimension" in d.sql
        assert "FROM claim_stage_history sh" in d.sql

    def test_metric_and_chart_carried(self):
        d = _compile({"metric": "sla_breach_rate", "chart_type": "area"})
        assert d.metric_slug == "sla_breach_rate"
        assert d.chart_type == "area"


# ── Test: Parameters ──────────────────────────────────────────────────────

class TestBoundParameters:
    def test_client_and_dates_bound(self):
        d = _compile({"metric": "claims_received", "time_range": JUNE})
        assert d.params["client_id"] == CLIENT
        assert d.params["start_date"] == "2025-06-01"
        # Half-open range: end bound is the day after the inclusive end
        assert d.params["end_date"] == "2025-07-01"
        assert CLIENT not in d.sql
        assert "2025-06-01" not in d.sql
        assert "c.client_id = :client_id" in d.sql
        assert "c.fnol_date >= CAST(:start_date AS DATE)" in d.sql
        assert "c.fnol_date < CAST(:end_date AS DATE)" in d.sql

    def test_scalar_filter(self):
        d = _compile({
            "metric": "sla_breach_rate",
            "filters": [{"field": "adjuster_id", "operator": "=", "value": "123"}],
        })
        assert "c.assigned_adjuster_id = :f0" in d.sql
        assert d.params["f0"] == "123"

    def test_in_filter_one_placeholder_per_value(self):
        d = _compile({
            "metric": "claims_received",
            "filters": [
                {"field": "region", "operator": "=", "value": "south"},
                {"field": "state_code", "operator": "NOT IN", "value": ["TX", "CA"]},
            ],
        })
        assert "c.region = :f0" in d.sql
        assert "c.state_code NOT IN (:f1_0, :f1_1)" in d.sql
        assert d.params["f1_0"] == "TX"
        assert d.params["f1_1"] == "CA"

    def test_like_filter(self):
        d = _compile({
            "metric": "claims_received",
            "filters": [{"field": "peril", "operator": "LIKE", "value": "wind%"}],
        })
        assert "c.peril LIKE :f0" in d.sql

    def test_limit_bound(self):
        d = _compile({"metric": "claims_received", "limit": 25})
        assert d.sql.endswith("LIMIT :row_limit")
        assert d.params["row_limit"] == 25

    def test_no_limit_clause_when_absent(self):
        d = _compile({"metric": "claims_received"})
        assert "LIMIT" not in d.sql
        assert "row_limit" not in d.params

    def test_hostile_values_never_reach_template(self):
        d = _compile({
            "metric": "sla_breach_rate",
            "dimensions": ["region"],
            "filters": [
                {"field": "region", "operator": "=", "value": HOSTILE},
                {"field": "peril", "operator": "IN", "value": [HOSTILE, "hail"]},
                {"field": "status", "operator": "LIKE", "value": "%' OR '1'='1"},
            ],
        })
        assert HOSTILE not in d.sql
        assert "OR '1'='1" not in d.sql
        assert "DROP" not in d.sql
        assert HOSTILE not in string_literals(d.sql)
        assert d.params["f0"] == HOSTILE
        assert d.params["f1_0"] == HOSTILE

    def test_filter_uses_resolved_column(self):
        d = _compile({
            "metric": "stage_dwell_time",
            "filters": [{"field": "stage", "operator": "=", "value": "inspection"}],
        })
        assert "sh.stage = :f0" in d.sql
        assert "c.current_stage" not in d.sql


# ── Test: Every template ──────────────────────────────────────────────────

class TestEveryTemplate:
    @pytest.mark.parametrize("slug", sorted(METRIC_TEMPLATES))
    def test_compiles_and_passes_guard(self, slug):
        d = _compile({"metric": slug, "limit": 10})
        ok, err = check_read_only(d.sql)
        assert ok, err
        assert d.params["client_id"] == CLIENT

    @pytest.mark.parametrize(
        "slug",
        sorted(s for s, t in METRIC_TEMPLATES.items() if t.aggregation in ("average", "ratio")),
    )
    def test_ratio_and_average_guard_denominator(self, slug):
        d = _compile({"metric": slug})
        assert "NULLIF(" in d.sql

    def test_only_trusted_literals(self):
        trusted = {"week", "Unassigned"}
        d = _compile({
            "metric": "sla_breach_rate",
            "dimensions": ["adjuster"],
            "time_grain": "week",
            "filters": [{"field": "region", "operator": "=", "value": "north"}],
        })
        assert string_literals(d.sql) <= trusted


# ── Test: Determinism ─────────────────────────────────────────────────────

class TestDeterminism:
    PAYLOAD = {
        "metric": "cost_per_claim",
        "dimensions": ["model"],
        "filters": [{"field": "llm_stage", "operator": "IN", "value": ["triage", "review"]}],
        "time_range": JUNE,
        "limit": 100,
    }

    def test_same_intent_same_descriptor(self):
        first = _compile(self.PAYLOAD)
        second = _compile(self.PAYLOAD)
        assert first.sql == second.sql
        assert first.params == second.params
        assert first.cache_key() == second.cache_key()

    def test_cache_key_tracks_params(self):
        a = _compile(self.PAYLOAD, client_id="client-a")
        b = _compile(self.PAYLOAD, client_id="client-b")
        assert a.sql == b.sql
        assert a.cache_key() != b.cache_key()
        assert len(a.cache_key()) == 32


# ── Test: Comparison and daily series ─────────────────────────────────────

class TestComparison:
    def test_previous_month(self):
        d = compile_comparison(
            _validated({"metric": "claims_received", "time_range": JUNE, "comparison": "-1_month"}),
            CLIENT,
        )
        assert d.params["start_date"] == "2025-05-02"
        assert d.params["end_date"] == "2025-06-01"

    def test_no_comparison(self):
        assert compile_comparison(_validated({"metric": "claims_received"}), CLIENT) is None

    def test_same_template_as_main_query(self):
        v = _validated({"metric": "claims_received", "time_range": JUNE, "comparison": "-1_year"})
        assert compile_comparison(v, CLIENT).sql == compile_query(v, CLIENT).sql


class TestDailySeries:
    def test_daily_buckets_no_dimensions(self):
        defn = CATALOG.lookup("cycle_time_e2e")
        d = compile_daily_series(defn, CLIENT, date(2025, 6, 1), date(2025, 6, 30))
        assert d.result_shape == TIME_SERIES
        assert "date_trunc('day', c.fnol_date) AS label" in d.sql
        assert d.columns == ("label", "value")
        assert d.params["start_date"] == "2025-06-01"
        assert d.params["end_date"] == "2025-07-01"
        assert check_read_only(d.sql) == (True, None)

    def test_dimensional_metric_collapses_to_one_series(self):
        d = compile_daily_series(CATALOG.lookup("model_mix"), CLIENT, date(2025, 6, 1), date(2025, 6, 30))
        assert "AS dimension" not in d.sql


# ── Test: Compilation errors ──────────────────────────────────────────────

class TestCompilationErrors:
    def test_metric_without_template(self):
        catalog = MetricCatalog(rows=[{"slug": "custom_metric", "allowed_dimensions": ["region"]}])
        v = _validated({"metric": "custom_metric"}, catalog)
        with pytest.raises(CompilationError) as exc:
            compile_query(v, CLIENT)
        assert exc.value.metric_slug == "custom_metric"

    def test_unknown_result_shape(self):
        catalog = MetricCatalog(rows=[{"slug": "pivot_metric", "result_shape": "pivot"}])
        v = _validated({"metric": "pivot_metric"}, catalog)
        with pytest.raises(CompilationError):
            compile_query(v, CLIENT)

    def test_compiler_for_unknown_slug(self):
        with pytest.raises(CompilationError):
            compiler_for("nope")

    def test_daily_series_without_template(self):
        catalog = MetricCatalog(rows=[{"slug": "custom_metric"}])
        with pytest.raises(CompilationError):
            compile_daily_series(catalog.lookup("custom_metric"), CLIENT, date(2025, 6, 1), date(2025, 6, 2))

    def test_untrusted_dimension_column_rejected(self):
        v = _validated({"metric": "claims_received", "dimensions": ["region"]})
        tampered = replace(v, metric=replace(v.metric, dimensions={"region": "c.ssn"}))
        with pytest.raises(CompilationError):
            compile_query(tampered, CLIENT)

    def test_per_metric_entry_point(self):
        v = _validated({"metric": "issue_rate"})
        assert compiler_for("issue_rate")(v, CLIENT).sql == compile_query(v, CLIENT).sql
