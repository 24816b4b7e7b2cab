"""
Metric Templates — trusted SQL fragments, keyed by metric slug.
================================================================
Every piece of SQL text the compiler emits comes from this module: FROM/JOIN
fragments, physical column expressions, aggregation expressions, fixed
conditions. Nothing here is ever built from intent values.

  DataSource      — one FROM/JOIN shape plus the dimension/filter keys it exposes
  MetricTemplate  — aggregation + result shape for one metric slug

Hard rules
----------
  - `average` and `ratio` expressions divide by NULLIF(denominator, 0), so an
    empty or all-zero denominator yields NULL instead of a division error.
  - GLOBAL_FILTER_COLUMNS only lists claim-level columns; every source joins
    `claims c`, so they resolve in any metric.
  - DEFAULT_METRIC_ROWS mirrors the seeded metric_definitions table and lets
    the catalog start without storage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

TIME_SERIES = "time_series"
DIMENSIONAL = "dimensional"
TABLE = "table"
RESULT_SHAPES = (TIME_SERIES, DIMENSIONAL, TABLE)

AGGREGATIONS = ("count", "sum", "average", "ratio")

# Claim-level columns, available through `claims c` in every source.
GLOBAL_FILTER_COLUMNS: Mapping[str, str] = MappingProxyType({
    "peril": "c.peril",
    "severity": "c.severity",
    "region": "c.region",
    "state_code": "c.state_code",
    "status": "c.status",
    "stage": "c.current_stage",
    "sla_breached": "c.sla_breached",
    "adjuster_id": "c.assigned_adjuster_id",
})


@dataclass(frozen=True)
class DataSource:
    name: str
    from_clause: str
    client_column: str
    date_column: str
    tables: frozenset[str]
    columns: Mapping[str, str] = field(default_factory=dict)

    def column_for(self, key: str) -> Optional[str]:
        """Source-specific columns shadow the global claim-level ones."""
        if key in self.columns:
            return self.columns[key]
        return GLOBAL_FILTER_COLUMNS.get(key)

    def known_keys(self) -> frozenset[str]:
        return frozenset(self.columns) | frozenset(GLOBAL_FILTER_COLUMNS)


@dataclass(frozen=True)
class MetricTemplate:
    slug: str
    source: DataSource
    aggregation: str            # "count" | "sum" | "average" | "ratio"
    value_expression: str
    result_shape: str
    conditions: tuple[str, ...] = ()
    default_dimension: Optional[str] = None   # required for dimensional metrics


# ---------------------------------------------------------------------------
# Data sources
# ---------------------------------------------------------------------------

_ADJUSTER = "COALESCE(a.full_name, 'Unassigned')"

CLAIMS = DataSource(
    name="claims",
    from_clause=(
        "claims c LEFT JOIN adjusters a "
        "ON c.assigned_adjuster_id = a.id AND a.client_id = c.client_id"
    ),
    client_column="c.client_id",
    date_column="c.fnol_date",
    tables=frozenset({"claims", "adjusters"}),
    columns=MappingProxyType({"adjuster": _ADJUSTER, "team": "a.team"}),
)

REVIEWS = DataSource(
    name="reviews",
    from_clause=(
        "claim_reviews cr JOIN claims c ON cr.claim_id = c.id "
        "LEFT JOIN adjusters a ON cr.reviewer_id = a.id AND a.client_id = c.client_id"
    ),
    client_column="c.client_id",
    date_column="cr.reviewed_at",
    tables=frozenset({"claim_reviews", "claims", "adjusters"}),
    columns=MappingProxyType({
        "review_type": "cr.review_type",
        "decision_type": "cr.outcome",
        "adjuster": _ADJUSTER,
        "team": "a.team",
    }),
)

LLM_USAGE = DataSource(
    name="llm_usage",
    from_clause="claim_llm_usage lu JOIN claims c ON lu.claim_id = c.id",
    client_column="c.client_id",
    date_column="lu.called_at",
    tables=frozenset({"claim_llm_usage", "claims"}),
    columns=MappingProxyType({"model": "lu.model", "llm_stage": "lu.stage"}),
)

STAGE_HISTORY = DataSource(
    name="stage_history",
    from_clause=(
        "claim_stage_history sh JOIN claims c ON sh.claim_id = c.id "
        "LEFT JOIN adjusters a ON sh.adjuster_id = a.id AND a.client_id = c.client_id"
    ),
    client_column="c.client_id",
    date_column="sh.entered_at",
    tables=frozenset({"claim_stage_history", "claims", "adjusters"}),
    columns=MappingProxyType({"stage": "sh.stage", "adjuster": _ADJUSTER}),
)

POLICIES = DataSource(
    name="policies",
    from_clause="claim_policies cp JOIN claims c ON cp.claim_id = c.id",
    client_column="c.client_id",
    date_column="c.fnol_date",
    tables=frozenset({"claim_policies", "claims"}),
    columns=MappingProxyType({"coverage_type": "cp.coverage_type"}),
)

ESTIMATES = DataSource(
    name="estimates",
    from_clause="claim_estimates ce JOIN claims c ON ce.claim_id = c.id",
    client_column="c.client_id",
    date_column="c.fnol_date",
    tables=frozenset({"claim_estimates", "claims"}),
)

BILLING = DataSource(
    name="billing",
    from_clause="claim_billing cb JOIN claims c ON cb.claim_id = c.id",
    client_column="c.client_id",
    date_column="cb.created_at",
    tables=frozenset({"claim_billing", "claims"}),
    columns=MappingProxyType({"billing_type": "cb.billing_type"}),
)

DATA_SOURCES = (CLAIMS, REVIEWS, LLM_USAGE, STAGE_HISTORY, POLICIES, ESTIMATES, BILLING)

ALLOWED_TABLES: frozenset[str] = frozenset().union(*(s.tables for s in DATA_SOURCES))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

METRIC_TEMPLATES: dict[str, MetricTemplate] = {}
DEFAULT_METRIC_ROWS: list[dict] = []


def _register(
    template: MetricTemplate,
    display_name: str,
    category: str,
    description: str,
    unit: str,
    chart_type: str,
    dimensions: list[str],
):
    METRIC_TEMPLATES[template.slug] = template
    DEFAULT_METRIC_ROWS.append({
        "slug": template.slug,
        "display_name": display_name,
        "category": category,
        "description": description,
        "unit": unit,
        "default_chart_type": chart_type,
        "allowed_dimensions": dimensions,
        "allowed_time_grains": ["day", "week", "month", "quarter", "year"],
        "is_active": True,
    })


_CLAIM_DIMS = ["peril", "severity", "region", "state_code", "status", "stage", "adjuster", "team"]
_REVIEW_DIMS = ["review_type", "decision_type", "adjuster", "team", "peril"]
_LLM_DIMS = ["model", "llm_stage", "peril"]


# ── Volume ──

_register(
    MetricTemplate("claims_received", CLAIMS, "count", "COUNT(*)", TABLE),
    "Claims Received", "volume", "Claims opened (FNOL) in the period",
    "count", "bar", _CLAIM_DIMS,
)
_register(
    MetricTemplate(
        "claims_in_progress", CLAIMS, "count", "COUNT(*)", TABLE,
        conditions=("c.status IN ('open', 'in_progress', 'review')",),
    ),
    "Claims In Progress", "volume", "Claims not yet closed",
    "count", "bar", _CLAIM_DIMS,
)
_register(
    MetricTemplate(
        "high_severity_trend", CLAIMS, "count", "COUNT(*)", TIME_SERIES,
        conditions=("c.severity IN ('high', 'critical')",),
    ),
    "High Severity Trend", "volume", "High and critical severity claims over time",
    "count", "line", [],
)
_register(
    MetricTemplate(
        "severity_distribution", CLAIMS, "count", "COUNT(*)", DIMENSIONAL,
        default_dimension="severity",
    ),
    "Severity Distribution", "volume", "Claims by severity band",
    "count", "pie", ["severity", "peril", "region"],
)

# ── Speed ──

_register(
    MetricTemplate(
        "cycle_time_e2e", CLAIMS, "average",
        "ROUND(SUM(EXTRACT(EPOCH FROM (COALESCE(c.closed_at, NOW()) - c.fnol_date)) / 86400.0)"
        " / NULLIF(COUNT(*), 0), 2)",
        TABLE,
    ),
    "End-to-End Cycle Time", "speed", "Average days from FNOL to close",
    "days", "bar", _CLAIM_DIMS,
)
_register(
    MetricTemplate(
        "time_to_first_touch", CLAIMS, "average",
        "ROUND(SUM(EXTRACT(EPOCH FROM (c.first_touch_at - c.fnol_date)) / 3600.0)"
        " / NULLIF(COUNT(c.first_touch_at), 0), 2)",
        TABLE,
        conditions=("c.first_touch_at IS NOT NULL",),
    ),
    "Time to First Touch", "speed", "Average hours from FNOL to first adjuster contact",
    "hours", "bar", _CLAIM_DIMS,
)
_register(
    MetricTemplate(
        "stage_dwell_time", STAGE_HISTORY, "average",
        "ROUND(SUM(sh.dwell_days) / NULLIF(COUNT(sh.dwell_days), 0), 2)",
        DIMENSIONAL,
        default_dimension="stage",
    ),
    "Stage Dwell Time", "speed", "Average days spent in each workflow stage",
    "days", "bar", ["stage", "adjuster"],
)

# ── Quality ──

_register(
    MetricTemplate(
        "sla_breach_rate", CLAIMS, "ratio",
        "ROUND(SUM(CASE WHEN c.sla_breached THEN 1 ELSE 0 END)::numeric"
        " / NULLIF(COUNT(*), 0), 4)",
        TABLE,
    ),
    "SLA Breach Rate", "quality", "Share of claims that breached their SLA target",
    "percentage", "line", _CLAIM_DIMS,
)
_register(
    MetricTemplate(
        "sla_breach_count", CLAIMS, "count", "COUNT(*)", TABLE,
        conditions=("c.sla_breached = TRUE",),
    ),
    "SLA Breaches", "quality", "Number of claims that breached their SLA target",
    "count", "bar", _CLAIM_DIMS,
)
_register(
    MetricTemplate(
        "issue_rate", CLAIMS, "ratio",
        "ROUND(SUM(CASE WHEN c.has_issues THEN 1 ELSE 0 END)::numeric"
        " / NULLIF(COUNT(*), 0), 4)",
        TABLE,
    ),
    "Issue Rate", "quality", "Share of claims flagged with at least one issue",
    "percentage", "line", _CLAIM_DIMS,
)
_register(
    MetricTemplate(
        "re_review_count", REVIEWS, "count", "COUNT(*)", TABLE,
        conditions=("cr.review_type = 're_review'",),
    ),
    "Re-Reviews", "quality", "Number of claims sent back for another review",
    "count", "bar", _REVIEW_DIMS,
)
_register(
    MetricTemplate(
        "human_override_rate", REVIEWS, "ratio",
        "ROUND(SUM(CASE WHEN cr.human_override THEN 1 ELSE 0 END)::numeric"
        " / NULLIF(COUNT(*), 0), 4)",
        TABLE,
    ),
    "Human Override Rate", "quality", "Share of reviews where a human overrode the model decision",
    "percentage", "line", _REVIEW_DIMS,
)

# ── AI operations ──

_register(
    MetricTemplate(
        "cost_per_claim", LLM_USAGE, "average",
        "ROUND(SUM(lu.cost_usd) / NULLIF(COUNT(DISTINCT lu.claim_id), 0), 4)",
        TABLE,
    ),
    "LLM Cost per Claim", "ai_ops", "Model spend divided by claims processed",
    "currency", "line", _LLM_DIMS,
)
_register(
    MetricTemplate(
        "tokens_per_claim", LLM_USAGE, "average",
        "ROUND(SUM(lu.input_tokens + lu.output_tokens)::numeric"
        " / NULLIF(COUNT(DISTINCT lu.claim_id), 0), 1)",
        TABLE,
    ),
    "Tokens per Claim", "ai_ops", "Input plus output tokens divided by claims processed",
    "tokens", "line", _LLM_DIMS,
)
_register(
    MetricTemplate(
        "llm_latency", LLM_USAGE, "average",
        "ROUND(SUM(lu.latency_ms)::numeric / NULLIF(COUNT(lu.latency_ms), 0), 1)",
        TABLE,
    ),
    "LLM Latency", "ai_ops", "Average model call latency",
    "ms", "line", _LLM_DIMS,
)
_register(
    MetricTemplate(
        "model_mix", LLM_USAGE, "count", "COUNT(*)", DIMENSIONAL,
        default_dimension="model",
    ),
    "Model Mix", "ai_ops", "Model calls by model name",
    "count", "pie", ["model", "llm_stage"],
)

# ── Financial ──

_register(
    MetricTemplate(
        "reserve_amount", CLAIMS, "average",
        "ROUND(SUM(c.reserve_amount) / NULLIF(COUNT(c.reserve_amount), 0), 2)",
        TABLE,
    ),
    "Average Reserve", "financial", "Average reserve set per claim",
    "currency", "bar", _CLAIM_DIMS,
)
_register(
    MetricTemplate(
        "paid_amount", CLAIMS, "average",
        "ROUND(SUM(c.paid_amount) / NULLIF(COUNT(c.paid_amount), 0), 2)",
        TABLE,
    ),
    "Average Paid", "financial", "Average amount paid per claim",
    "currency", "bar", _CLAIM_DIMS,
)
_register(
    MetricTemplate(
        "net_claim_amount_trend", CLAIMS, "sum", "ROUND(SUM(c.paid_amount), 2)", TIME_SERIES,
    ),
    "Net Claim Amount Trend", "financial", "Total paid amount over time",
    "currency", "line", [],
)
_register(
    MetricTemplate(
        "estimate_accuracy", ESTIMATES, "ratio",
        "ROUND(AVG(ce.estimate_amount / NULLIF(c.paid_amount, 0)), 4)",
        TABLE,
    ),
    "Estimate Accuracy", "financial", "Estimated amount relative to amount paid",
    "ratio", "line", ["peril", "severity", "region"],
)
_register(
    MetricTemplate(
        "depreciation_ratio", POLICIES, "ratio",
        "ROUND(SUM(cp.replacement_cost_value - cp.actual_cash_value)"
        " / NULLIF(SUM(cp.replacement_cost_value), 0), 4)",
        TABLE,
    ),
    "Depreciation Ratio", "financial", "Depreciation relative to replacement cost value",
    "ratio", "line", ["coverage_type", "peril", "region"],
)
_register(
    MetricTemplate(
        "coverage_type_distribution", POLICIES, "count", "COUNT(*)", DIMENSIONAL,
        default_dimension="coverage_type",
    ),
    "Coverage Type Distribution", "policy", "Claims by policy coverage type",
    "count", "pie", ["coverage_type", "peril"],
)
_register(
    MetricTemplate(
        "expense_type_breakdown", BILLING, "sum", "ROUND(SUM(cb.amount), 2)", DIMENSIONAL,
        default_dimension="billing_type",
    ),
    "Expense Type Breakdown", "financial", "Billed expenses by billing type",
    "currency", "stacked_bar", ["billing_type"],
)
