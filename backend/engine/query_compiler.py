"""
Query Compiler — ValidatedIntent → parameterised QueryDescriptor.
==================================================================
compile_query(validated, client_id) → QueryDescriptor

Rules:
  1. SQL text comes only from engine.metric_templates and from columns the
     catalog already resolved. Filter values, dates, the client id and the
     row limit are always bound parameters (:client_id, :start_date,
     :end_date, :f0, :f1_0, ..., :row_limit).
  2. The date range is half-open: end_date is bound as the day after the
     inclusive end of the validated range.
  3. Column order is fixed: label (time bucket) first, then dimensions, then
     value. Ordering is label then dimensions, ascending.
  4. Each metric compiles through its own entry point (compiler_for(slug)),
     a small function bound to the metric's template and result shape.
  5. Every compiled template is checked by sql_guard before it leaves here.

Any violation is a CompilationError: a code defect, logged, never user input.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from functools import partial
from typing import Any, Callable, Optional

from engine.comparison import comparison_range
from engine.errors import CompilationError
from engine.intent_validator import (
    FilterClause,
    TimeGrain,
    TimeRange,
    ValidatedIntent,
)
from engine.metric_catalog import MetricDefinition
from engine.metric_templates import (
    DIMENSIONAL,
    METRIC_TEMPLATES,
    TABLE,
    TIME_SERIES,
    MetricTemplate,
)
from engine.sql_guard import check_read_only

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryDescriptor:
    """Template + bound parameters, handed to the execution layer."""
    sql: str
    params: dict[str, Any] = field(default_factory=dict)
    result_shape: str = TABLE
    metric_slug: str = ""
    chart_type: str = "bar"
    columns: tuple[str, ...] = ()

    def cache_key(self) -> str:
        canonical = json.dumps(self.params, sort_keys=True, default=str)
        return hashlib.md5(f"{self.sql}|{canonical}".encode()).hexdigest()


ShapeBuilder = Callable[..., QueryDescriptor]

_SHAPE_BUILDERS: dict[str, ShapeBuilder] = {}


def _shape(result_shape: str):
    def register(fn: ShapeBuilder) -> ShapeBuilder:
        _SHAPE_BUILDERS[result_shape] = fn
        return fn
    return register


# ── SQL pieces ────────────────────────────────────────────────────────────

class _Params:
    """Collects bind parameters in a deterministic order."""

    def __init__(self):
        self.values: dict[str, Any] = {}

    def bind(self, name: str, value: Any) -> str:
        self.values[name] = value
        return f":{name}"


def _label_expr(template: MetricTemplate, grain: TimeGrain) -> str:
    return f"date_trunc('{grain.value}', {template.source.date_column})"


def _trusted_columns(template: MetricTemplate) -> set[str]:
    return {template.source.column_for(key) for key in template.source.known_keys()}


def _check_column(template: MetricTemplate, column: str, what: str) -> str:
    # Columns arrive already resolved by the catalog; this re-checks them
    # against the template's own source so a stale definition can't leak in.
    if column not in _trusted_columns(template):
        raise CompilationError(template.slug, f"{what} column {column!r} is not in source {template.source.name}")
    return column


def _filter_sql(template: MetricTemplate, index: int, clause: FilterClause, params: _Params) -> str:
    column = _check_column(template, clause.column, "filter")
    if clause.operator.takes_list:
        values = clause.value if isinstance(clause.value, tuple) else (clause.value,)
        holders = ", ".join(
            params.bind(f"f{index}_{j}", v) for j, v in enumerate(values)
        )
        return f"{column} {clause.operator.value} ({holders})"
    return f"{column} {clause.operator.value} {params.bind(f'f{index}', clause.value)}"


def _where_sql(
    template: MetricTemplate,
    client_id: str,
    time_range: TimeRange,
    filters: tuple[FilterClause, ...],
    params: _Params,
) -> str:
    source = template.source
    parts = [
        f"{source.client_column} = {params.bind('client_id', client_id)}",
        f"{source.date_column} >= CAST({params.bind('start_date', time_range.start.isoformat())} AS DATE)",
        f"{source.date_column} < CAST({params.bind('end_date', (time_range.end + timedelta(days=1)).isoformat())} AS DATE)",
    ]
    parts.extend(template.conditions)
    for i, clause in enumerate(filters):
        parts.append(_filter_sql(template, i, clause, params))
    return " AND ".join(parts)


def _assemble(
    template: MetricTemplate,
    client_id: str,
    time_range: TimeRange,
    grain: TimeGrain,
    dimensions: list[tuple[str, str]],
    filters: tuple[FilterClause, ...],
    limit: Optional[int],
    chart_type: str,
    result_shape: str,
) -> QueryDescriptor:
    """dimensions: (alias, trusted column) pairs, in grouping order."""
    params = _Params()
    label = _label_expr(template, grain)

    select = [f"{label} AS label"]
    select += [f"{column} AS {alias}" for alias, column in dimensions]
    select.append(f"{template.value_expression} AS value")

    group_by = [label] + [column for _, column in dimensions]
    order_by = ["label ASC"] + [f"{alias} ASC" for alias, _ in dimensions]

    sql = (
        f"SELECT {', '.join(select)} "
        f"FROM {template.source.from_clause} "
        f"WHERE {_where_sql(template, client_id, time_range, filters, params)} "
        f"GROUP BY {', '.join(group_by)} "
        f"ORDER BY {', '.join(order_by)}"
    )
    if limit is not None:
        sql += f" LIMIT {params.bind('row_limit', int(limit))}"

    ok, err = check_read_only(sql)
    if not ok:
        raise CompilationError(template.slug, f"compiled template failed read-only check: {err}")

    return QueryDescriptor(
        sql=sql,
        params=params.values,
        result_shape=result_shape,
        metric_slug=template.slug,
        chart_type=chart_type,
        columns=("label", *(alias for alias, _ in dimensions), "value"),
    )


# ── Shape builders ────────────────────────────────────────────────────────

@_shape(TIME_SERIES)
def _build_time_series(template: MetricTemplate, validated: ValidatedIntent, client_id: str) -> QueryDescriptor:
    if validated.dimensions:
        raise CompilationError(template.slug, "time_series metrics take no dimensions")
    return _assemble(
        template, client_id, validated.time_range, validated.time_grain, [],
        validated.filters, validated.limit, validated.chart_type, TIME_SERIES,
    )


@_shape(DIMENSIONAL)
def _build_dimensional(template: MetricTemplate, validated: ValidatedIntent, client_id: str) -> QueryDescriptor:
    keys = list(validated.dimensions) or ([template.default_dimension] if template.default_dimension else [])
    if len(keys) != 1:
        raise CompilationError(template.slug, f"dimensional metrics need exactly one dimension, got {len(keys)}")
    column = _dimension_column(template, validated.metric, keys[0])
    return _assemble(
        template, client_id, validated.time_range, validated.time_grain, [("dimension", column)],
        validated.filters, validated.limit, validated.chart_type, DIMENSIONAL,
    )


@_shape(TABLE)
def _build_table(template: MetricTemplate, validated: ValidatedIntent, client_id: str) -> QueryDescriptor:
    dims = [
        (f"dim_{i}", _dimension_column(template, validated.metric, key))
        for i, key in enumerate(validated.dimensions)
    ]
    return _assemble(
        template, client_id, validated.time_range, validated.time_grain, dims,
        validated.filters, validated.limit, validated.chart_type, TABLE,
    )


def _dimension_column(template: MetricTemplate, metric: MetricDefinition, key: str) -> str:
    column = metric.dimensions.get(key)
    if column is None:
        raise CompilationError(template.slug, f"dimension '{key}' has no catalog column")
    return _check_column(template, column, "dimension")


# ── Entry points ──────────────────────────────────────────────────────────

def compiler_for(slug: str) -> Callable[[ValidatedIntent, str], QueryDescriptor]:
    """The compile function for one metric: its template bound to its shape builder."""
    template = METRIC_TEMPLATES.get(slug)
    if template is None:
        raise CompilationError(slug, "no query template registered for this metric")
    builder = _SHAPE_BUILDERS.get(template.result_shape)
    if builder is None:
        raise CompilationError(slug, f"no compiler for result shape '{template.result_shape}'")
    return partial(builder, template)


def compile_query(validated: ValidatedIntent, client_id: str) -> QueryDescriptor:
    slug = validated.metric.slug
    try:
        if validated.metric.result_shape not in _SHAPE_BUILDERS:
            raise CompilationError(slug, f"no compiler for result shape '{validated.metric.result_shape}'")
        descriptor = compiler_for(slug)(validated, client_id)
    except CompilationError as e:
        logger.error("Compilation failed for %s: %s", slug, e.reason)
        raise
    logger.debug("Compiled %s (%s) with %d params", slug, descriptor.result_shape, len(descriptor.params))
    return descriptor


def compile_comparison(validated: ValidatedIntent, client_id: str) -> Optional[QueryDescriptor]:
    """Same query over the comparison period; None when no comparison was asked for."""
    if not validated.comparison:
        return None
    start, end = comparison_range(validated.time_range.start, validated.time_range.end, validated.comparison)
    shifted = replace(validated, time_range=TimeRange(start, end))
    return compile_query(shifted, client_id)


def compile_daily_series(
    definition: MetricDefinition,
    client_id: str,
    start: date,
    end: date,
) -> QueryDescriptor:
    """One value per day for the whole metric, no dimensions or filters."""
    template = METRIC_TEMPLATES.get(definition.slug)
    if template is None:
        logger.error("Compilation failed for %s: no query template", definition.slug)
        raise CompilationError(definition.slug, "no query template registered for this metric")
    return _assemble(
        template, client_id, TimeRange(start, end), TimeGrain.DAY, [],
        (), None, "line", TIME_SERIES,
    )
