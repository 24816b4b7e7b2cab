"""
Intent Validator — allow-list checks between the LLM and the query compiler.
=============================================================================
validate_intent(raw, catalog) → (ok, error, validated)

Checks run in this order; the first failure wins and names the field:
  1. metric slug exists in the catalog
  2. every dimension is allowed for that metric (and fits its result shape)
  3. every filter field resolves to a catalog column
  4. every filter operator is in the closed FilterOperator set
  5. time range parses, start <= end, span <= MAX_TIME_RANGE_DAYS
  6. time grain in {day, week, month, quarter, year} — unknown values fall
     back to "day" (lenient, recorded in ValidatedIntent.warnings)
  7. result limit clamped to [1, MAX_RESULT_LIMIT]

Pure function: no I/O, no SQL. Unknown fields are rejected, never dropped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any, Optional, Union

import app_config
from engine import RawIntent
from engine.errors import ValidationError
from engine.metric_catalog import MetricCatalog, MetricDefinition
from engine.metric_templates import DIMENSIONAL, TIME_SERIES

logger = logging.getLogger(__name__)

MAX_IN_VALUES = 100

VALID_CHART_TYPES = {
    "line", "bar", "column", "stacked_bar", "area", "pie", "table", "heatmap", "waterfall",
}

_DATE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:[T ].*)?$")


class FilterOperator(str, Enum):
    EQ = "="
    NE = "!="
    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    LIKE = "LIKE"
    IN = "IN"
    NOT_IN = "NOT IN"

    @property
    def takes_list(self) -> bool:
        return self in (FilterOperator.IN, FilterOperator.NOT_IN)

    @classmethod
    def parse(cls, raw: Any) -> Optional["FilterOperator"]:
        """Exact symbol match; keyword operators are case/whitespace-insensitive."""
        if not isinstance(raw, str):
            return None
        text = " ".join(raw.split()).upper()
        try:
            return cls(text)
        except ValueError:
            return None


class TimeGrain(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


@dataclass(frozen=True)
class FilterClause:
    field: str
    column: str                                  # resolved through the catalog
    operator: FilterOperator
    value: Union[str, tuple[str, ...]]           # tuple only for IN / NOT IN


@dataclass(frozen=True)
class TimeRange:
    start: date
    end: date                                    # inclusive

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


@dataclass(frozen=True)
class ValidatedIntent:
    metric: MetricDefinition
    dimensions: tuple[str, ...]
    filters: tuple[FilterClause, ...]
    time_range: TimeRange
    time_grain: TimeGrain
    limit: Optional[int]
    chart_type: str
    comparison: Optional[str] = None
    warnings: tuple[str, ...] = ()


# ── Validation ────────────────────────────────────────────────────────────

def validate_intent(
    intent: RawIntent | dict,
    catalog: MetricCatalog,
    today: Optional[date] = None,
    max_span_days: int = app_config.MAX_TIME_RANGE_DAYS,
    max_limit: int = app_config.MAX_RESULT_LIMIT,
) -> tuple[bool, Optional[ValidationError], Optional[ValidatedIntent]]:
    """
    Validate an untrusted intent against the catalog.

    Returns
    -------
    (ok, error, validated)
    - On success: (True, None, ValidatedIntent)
    - On failure: (False, ValidationError, None)
    """
    try:
        raw = intent if isinstance(intent, RawIntent) else RawIntent.from_llm(intent)
        validated = _validate(raw, catalog, today or date.today(), max_span_days, max_limit)
    except ValidationError as e:
        logger.debug("Intent rejected on %s: %s", e.field, e.reason)
        return False, e, None
    return True, None, validated


def _validate(
    raw: RawIntent,
    catalog: MetricCatalog,
    today: date,
    max_span_days: int,
    max_limit: int,
) -> ValidatedIntent:
    warnings: list[str] = []

    metric = _check_metric(raw.metric, catalog)
    dimensions = _check_dimensions(raw.dimensions, metric)
    columns = _check_filter_fields(raw, metric, catalog)
    filters = _check_filter_operators(raw, columns)
    time_range = _check_time_range(raw, today, max_span_days)
    grain = _check_time_grain(raw.time_grain, warnings)
    limit = _check_limit(raw.limit, max_limit, warnings)

    chart_type = metric.default_chart_type
    if raw.chart_type:
        requested = raw.chart_type.strip().lower()
        if requested in VALID_CHART_TYPES:
            chart_type = requested
        else:
            warnings.append(
                f"Unknown chart type '{raw.chart_type}'; using '{metric.default_chart_type}'."
            )

    return ValidatedIntent(
        metric=metric,
        dimensions=dimensions,
        filters=filters,
        time_range=time_range,
        time_grain=grain,
        limit=limit,
        chart_type=chart_type,
        comparison=raw.comparison or None,
        warnings=tuple(warnings),
    )


def _check_metric(slug: Optional[str], catalog: MetricCatalog) -> MetricDefinition:
    if not slug or not slug.strip():
        raise ValidationError("metric", "Missing metric slug.")
    metric = catalog.lookup(slug.strip())
    if metric is None:
        raise ValidationError(
            "metric",
            f"Unknown metric '{slug}'. Available: {', '.join(catalog.slugs())}",
            slug,
        )
    return metric


def _check_dimensions(requested: list[str], metric: MetricDefinition) -> tuple[str, ...]:
    allowed = metric.allowed_dimensions
    dims: list[str] = []
    for dim in requested:
        if dim not in allowed:
            raise ValidationError(
                "dimensions",
                f"Dimension '{dim}' is not allowed for metric '{metric.slug}'. "
                f"Allowed dimensions: {', '.join(sorted(allowed)) or '(none)'}",
                dim,
            )
        if dim not in dims:
            dims.append(dim)

    if metric.result_shape == TIME_SERIES and dims:
        raise ValidationError(
            "dimensions",
            f"Metric '{metric.slug}' is a time series and cannot be broken down by "
            f"{', '.join(dims)}.",
        )
    if metric.result_shape == DIMENSIONAL:
        if len(dims) > 1:
            raise ValidationError(
                "dimensions",
                f"Metric '{metric.slug}' accepts exactly one dimension, got {len(dims)}.",
            )
        if not dims and metric.default_dimension:
            dims.append(metric.default_dimension)
    return tuple(dims)


def _check_filter_fields(
    raw: RawIntent, metric: MetricDefinition, catalog: MetricCatalog,
) -> list[str]:
    columns = []
    for i, clause in enumerate(raw.filters):
        column = catalog.filter_column_for(metric.slug, clause.field)
        if column is None:
            valid = sorted(set(metric.dimensions) | set(metric.filter_columns))
            raise ValidationError(
                f"filters[{i}].field",
                f"Unknown filter field '{clause.field}' for metric '{metric.slug}'. "
                f"Valid fields: {', '.join(valid)}",
                clause.field,
            )
        columns.append(column)
    return columns


def _check_filter_operators(raw: RawIntent, columns: list[str]) -> tuple[FilterClause, ...]:
    clauses = []
    for i, (clause, column) in enumerate(zip(raw.filters, columns)):
        operator = FilterOperator.parse(clause.operator)
        if operator is None:
            raise ValidationError(
                f"filters[{i}].operator",
                f"Invalid operator '{clause.operator}'. "
                f"Valid: {', '.join(op.value for op in FilterOperator)}",
                clause.operator,
            )
        value = _coerce_value(operator, clause.value, f"filters[{i}].value")
        clauses.append(FilterClause(clause.field, column, operator, value))
    return tuple(clauses)


def _scalar_text(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value
    return None


def _coerce_value(operator: FilterOperator, value: Any, field: str) -> Union[str, tuple[str, ...]]:
    if operator.takes_list:
        if isinstance(value, str):
            items = [v.strip() for v in value.split(",") if v.strip()]
        elif isinstance(value, (list, tuple)):
            items = [_scalar_text(v) for v in value]
            if any(v is None for v in items):
                raise ValidationError(field, f"{operator.value} values must be plain strings or numbers.")
        else:
            text = _scalar_text(value)
            items = [text] if text is not None else []
        if not items:
            raise ValidationError(field, f"{operator.value} needs at least one value.")
        if len(items) > MAX_IN_VALUES:
            raise ValidationError(
                field, f"{operator.value} accepts at most {MAX_IN_VALUES} values, got {len(items)}."
            )
        return tuple(items)

    text = _scalar_text(value)
    if text is None:
        raise ValidationError(field, f"Operator '{operator.value}' needs a single value.", value)
    return text


def _parse_date(raw: Optional[str], field: str) -> date:
    match = _DATE_RE.match(raw.strip()) if isinstance(raw, str) else None
    if not match:
        raise ValidationError(field, f"'{raw}' is not a calendar date (YYYY-MM-DD).", raw)
    try:
        return date.fromisoformat(match.group(1))
    except ValueError:
        raise ValidationError(field, f"'{raw}' is not a valid calendar date.", raw) from None


def _check_time_range(raw: RawIntent, today: date, max_span_days: int) -> TimeRange:
    tr = raw.time_range
    if tr is None:
        return TimeRange(
            start=today - timedelta(days=app_config.DEFAULT_TIME_RANGE_DAYS), end=today
        )
    if not tr.start or not tr.end:
        label = f" for '{tr.value}'" if tr.value else ""
        raise ValidationError(
            "time_range", f"Time range must include start and end dates{label}.", tr.value
        )

    start = _parse_date(tr.start, "time_range.start")
    end = _parse_date(tr.end, "time_range.end")
    if start > end:
        raise ValidationError(
            "time_range", f"Time range start {start.isoformat()} is after end {end.isoformat()}."
        )
    span = TimeRange(start, end)
    if span.days > max_span_days:
        raise ValidationError(
            "time_range",
            f"Time range covers {span.days} days; the maximum is {max_span_days}.",
        )
    return span


def _check_time_grain(raw: Optional[str], warnings: list[str]) -> TimeGrain:
    if not raw:
        return TimeGrain.DAY
    try:
        return TimeGrain(raw.strip().lower())
    except ValueError:
        # Lenient: an unrecognised grain falls back to day instead of failing
        warnings.append(f"Unknown time grain '{raw}'; using 'day'.")
        return TimeGrain.DAY


def _check_limit(raw: Any, max_limit: int, warnings: list[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise ValidationError("limit", "Limit must be a whole number.", raw)
    try:
        limit = int(str(raw).strip()) if not isinstance(raw, (int, float)) else int(raw)
    except (ValueError, OverflowError):
        raise ValidationError("limit", f"Limit '{raw}' is not a whole number.", raw) from None
    if limit > max_limit:
        warnings.append(f"Limit {limit} clamped to {max_limit}.")
        return max_limit
    if limit < 1:
        warnings.append(f"Limit {limit} raised to 1.")
        return 1
    return limit
