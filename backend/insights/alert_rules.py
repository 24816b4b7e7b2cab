"""
Alert Rules — threshold rules over the latest metric values.
=============================================================
Conditions (alert_rules.condition):
  gt          latest > threshold
  lt          latest < threshold
  eq          |latest - threshold| < 0.001
  change_pct  |Δ%| vs previous value >= threshold (needs previous > 0)

Legacy names from the settings UI: exceeds → gt, below → lt, anomaly → change_pct.
Rules with an unknown condition or no value for their metric are skipped.

All rules are deterministic (no LLM). Cost: $0.
"""

import logging
from datetime import date, timedelta
from typing import Iterable, Mapping, Optional, Union

from engine.errors import StorageError
from insights import AlertResult, AlertRule

logger = logging.getLogger(__name__)

CONDITIONS = ("gt", "lt", "eq", "change_pct")

LEGACY_CONDITIONS = {
    "exceeds": "gt",
    "below": "lt",
    "anomaly": "change_pct",
}

EQ_TOLERANCE = 0.001

_CONDITION_WORDS = {
    "gt": "above",
    "lt": "below",
    "eq": "at",
}


def normalize_condition(condition: Optional[str]) -> Optional[str]:
    if not condition:
        return None
    c = condition.strip().lower()
    c = LEGACY_CONDITIONS.get(c, c)
    return c if c in CONDITIONS else None


def _as_rule(rule: Union[AlertRule, dict]) -> AlertRule:
    if isinstance(rule, AlertRule):
        return rule
    return AlertRule.model_validate(rule)


def evaluate_rules(
    rules: Iterable[Union[AlertRule, dict]],
    latest_values: Mapping[str, Optional[float]],
    previous_values: Optional[Mapping[str, Optional[float]]] = None,
) -> list[AlertResult]:
    """Evaluate every active rule; returns the fired alerts in rule order."""
    previous_values = previous_values or {}
    fired: list[AlertResult] = []
    evaluated = 0

    for raw in rules:
        try:
            rule = _as_rule(raw)
        except Exception as e:
            logger.warning(f"Skipping malformed alert rule {raw!r}: {e}")
            continue
        if not rule.is_active:
            continue

        condition = normalize_condition(rule.condition)
        if condition is None:
            logger.debug(f"Unknown alert condition: {rule.condition}")
            continue

        latest = latest_values.get(rule.metric_slug)
        if latest is None:
            continue
        evaluated += 1

        if condition == "change_pct":
            alert = _evaluate_change_pct(rule, float(latest), previous_values.get(rule.metric_slug))
        else:
            alert = _evaluate_threshold(rule, condition, float(latest))
        if alert:
            fired.append(alert)

    logger.info(f"Evaluated {evaluated} alert rules, fired {len(fired)}")
    return fired


def _evaluate_threshold(rule: AlertRule, condition: str, value: float) -> Optional[AlertResult]:
    if condition == "gt":
        triggered = value > rule.threshold
    elif condition == "lt":
        triggered = value < rule.threshold
    else:
        triggered = abs(value - rule.threshold) < EQ_TOLERANCE
    if not triggered:
        return None

    word = _CONDITION_WORDS[condition]
    return AlertResult(
        alert_type="threshold",
        severity=rule.severity,
        title=f"{rule.metric_slug} {word} {rule.threshold:g}",
        summary=f"{rule.metric_slug} is {value:g}, {word} the threshold of {rule.threshold:g}.",
        evidence={
            "current_value": value,
            "threshold": rule.threshold,
            "condition": condition,
        },
        metric_key=rule.metric_slug,
    )


def _evaluate_change_pct(
    rule: AlertRule, value: float, previous: Optional[float],
) -> Optional[AlertResult]:
    if previous is None or previous <= 0:
        return None
    change_pct = ((value - previous) / previous) * 100
    if abs(change_pct) < rule.threshold:
        return None

    verb = "rose" if change_pct > 0 else "fell"
    return AlertResult(
        alert_type="change_pct",
        severity=rule.severity,
        title=f"{rule.metric_slug} {verb} {abs(change_pct):.0f}%",
        summary=(
            f"{rule.metric_slug} moved from {previous:g} to {value:g} "
            f"({change_pct:+.1f}%) compared to the previous period."
        ),
        evidence={
            "current_value": value,
            "previous_value": previous,
            "change_pct": round(change_pct, 1),
            "threshold": rule.threshold,
        },
        metric_key=rule.metric_slug,
    )


def seed_default_rules(client_id: str) -> list[dict]:
    """Default alert_rules rows for a new client."""
    defaults = [
        ("sla_breach_rate", "gt", 20, "critical"),
        ("cycle_time_e2e", "gt", 45, "warning"),
        ("human_override_rate", "gt", 50, "warning"),
        ("cost_per_claim", "gt", 0.05, "info"),
        ("re_review_count", "gt", 10, "warning"),
    ]
    return [
        {
            "client_id": client_id,
            "metric_slug": slug,
            "condition": condition,
            "threshold": threshold,
            "severity": severity,
            "is_active": True,
        }
        for slug, condition, threshold, severity in defaults
    ]


async def check_alerts(
    client_id: str,
    catalog,
    storage,
    today: Optional[date] = None,
    seed_missing: bool = False,
) -> list[AlertResult]:
    """
    Fetch the client's active rules and evaluate them against the last two
    days of each rule's metric (latest = today, previous = the day before).

    With seed_missing, a client with no rules gets the default set stored
    first. A metric whose series can't be fetched is skipped.
    """
    rules = await storage.fetch_alert_rules(client_id)
    if not rules and seed_missing:
        rules = seed_default_rules(client_id)
        await storage.insert_alert_rules(rules)
        logger.info(f"Seeded {len(rules)} default alert rules for {client_id}")
    if not rules:
        return []

    await catalog.ensure_fresh()
    end = today or date.today()
    latest: dict[str, float] = {}
    previous: dict[str, float] = {}

    slugs = dict.fromkeys(r.get("metric_slug") for r in rules if isinstance(r, dict))
    for slug in slugs:
        defn = catalog.lookup(slug)
        if defn is None or not defn.has_template:
            logger.debug(f"No queryable metric for alert rule: {slug}")
            continue
        try:
            series = await storage.fetch_daily_series(client_id, defn, end - timedelta(days=1), end)
        except StorageError as e:
            logger.warning(f"Alert values for {slug} unavailable: {e.reason}")
            continue
        series = sorted(series, key=lambda p: p.day)
        if series and series[-1].day == end:
            latest[slug] = series[-1].value
            if len(series) > 1:
                previous[slug] = series[-2].value

    return evaluate_rules(rules, latest, previous)
