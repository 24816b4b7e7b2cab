"""
Tests for the threshold alert rules.
Rule evaluation is deterministic; check_alerts runs against an in-memory storage.
"""

import pytest
from datetime import date
from unittest.mock import AsyncMock
import sys, os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from engine.errors import StorageError
from engine.metric_catalog import MetricCatalog
from insights import AlertResult, AlertRule, DailyPoint
from insights.alert_rules import (
    EQ_TOLERANCE,
    check_alerts,
    evaluate_rules,
    normalize_condition,
    seed_default_rules,
)


def _rule(metric="sla_breach_rate", condition="gt", threshold=20, severity="critical", **extra):
    return {"metric_slug": metric, "condition": condition, "threshold": threshold, "severity": severity, **extra}


# ── Test: conditions ─────────────────────────────────────────────────────

class TestNormalizeCondition:
    @pytest.mark.parametrize("raw,expected", [
        ("gt", "gt"),
        ("lt", "lt"),
        ("eq", "eq"),
        ("change_pct", "change_pct"),
        ("exceeds", "gt"),
        ("below", "lt"),
        ("anomaly", "change_pct"),
        (" GT ", "gt"),
        ("between", None),
        ("", None),
        (None, None),
    ])
    def test_mapping(self, raw, expected):
        assert normalize_condition(raw) == expected


class TestThresholdRules:
    def test_gt_fires(self):
        fired = evaluate_rules([_rule()], {"sla_breach_rate": 27.5})
        assert len(fired) == 1
        alert = fired[0]
        assert isinstance(alert, AlertResult)
        assert alert.alert_type == "threshold"
        assert alert.severity == "critical"
        assert alert.metric_key == "sla_breach_rate"
        assert alert.evidence["current_value"] == 27.5
        assert alert.evidence["threshold"] == 20

    def test_gt_is_strict(self):
        assert evaluate_rules([_rule()], {"sla_breach_rate": 20}) == []

    def test_lt_fires(self):
        fired = evaluate_rules([_rule(condition="below", threshold=5)], {"sla_breach_rate": 4})
        assert fired[0].evidence["condition"] == "lt"

    def test_eq_within_tolerance(self):
        rule = _rule(condition="eq", threshold=0.05)
        assert len(evaluate_rules([rule], {"sla_breach_rate": 0.05 + EQ_TOLERANCE / 2})) == 1
        assert evaluate_rules([rule], {"sla_breach_rate": 0.05 + EQ_TOLERANCE * 2}) == []

    def test_accepts_model_rules(self):
        rule = AlertRule(metric_slug="cost_per_claim", condition="gt", threshold=0.05, severity="info")
        fired = evaluate_rules([rule], {"cost_per_claim": 0.08})
        assert fired[0].severity == "info"


class TestChangePctRules:
    def test_rise_fires(self):
        rule = _rule(metric="re_review_count", condition="change_pct", threshold=25, severity="warning")
        fired = evaluate_rules([rule], {"re_review_count": 15}, {"re_review_count": 10})
        assert len(fired) == 1
        assert fired[0].alert_type == "change_pct"
        assert fired[0].evidence["change_pct"] == 50.0
        assert "rose" in fired[0].title

    def test_drop_fires_on_magnitude(self):
        rule = _rule(metric="re_review_count", condition="anomaly", threshold=25)
        fired = evaluate_rules([rule], {"re_review_count": 5}, {"re_review_count": 10})
        assert fired[0].evidence["change_pct"] == -50.0
        assert "fell" in fired[0].title

    def test_threshold_inclusive(self):
        rule = _rule(metric="re_review_count", condition="change_pct", threshold=50)
        assert len(evaluate_rules([rule], {"re_review_count": 15}, {"re_review_count": 10})) == 1

    def test_small_change_ignored(self):
        rule = _rule(metric="re_review_count", condition="change_pct", threshold=25)
        assert evaluate_rules([rule], {"re_review_count": 11}, {"re_review_count": 10}) == []

    @pytest.mark.parametrize("previous", [None, 0, -3])
    def test_needs_positive_previous(self, previous):
        rule = _rule(metric="re_review_count", condition="change_pct", threshold=25)
        assert evaluate_rules([rule], {"re_review_count": 15}, {"re_review_count": previous}) == []


class TestSkippedRules:
    def test_unknown_condition(self):
        assert evaluate_rules([_rule(condition="between")], {"sla_breach_rate": 99}) == []

    def test_inactive(self):
        assert evaluate_rules([_rule(is_active=False)], {"sla_breach_rate": 99}) == []

    def test_metric_without_value(self):
        assert evaluate_rules([_rule()], {"cycle_time_e2e": 99}) == []
        assert evaluate_rules([_rule()], {"sla_breach_rate": None}) == []

    def test_malformed_rule_does_not_stop_others(self):
        fired = evaluate_rules(
            [{"metric_slug": "sla_breach_rate"}, _rule()],
            {"sla_breach_rate": 30},
        )
        assert len(fired) == 1

    def test_fired_in_rule_order(self):
        rules = [
            _rule(metric="cycle_time_e2e", threshold=45, severity="warning"),
            _rule(),
        ]
        fired = evaluate_rules(rules, {"sla_breach_rate": 30, "cycle_time_e2e": 50})
        assert [a.metric_key for a in fired] == ["cycle_time_e2e", "sla_breach_rate"]


class TestSeedDefaults:
    def test_five_default_rules(self):
        rows = seed_default_rules("client-1")
        assert len(rows) == 5
        assert all(r["client_id"] == "client-1" and r["is_active"] for r in rows)
        by_metric = {r["metric_slug"]: r for r in rows}
        assert by_metric["sla_breach_rate"]["threshold"] == 20
        assert by_metric["sla_breach_rate"]["severity"] == "critical"
        assert by_metric["cost_per_claim"]["threshold"] == 0.05
        assert by_metric["cost_per_claim"]["severity"] == "info"

    def test_seeded_rules_evaluate(self):
        fired = evaluate_rules(seed_default_rules("client-1"), {
            "sla_breach_rate": 25,
            "cycle_time_e2e": 30,
            "human_override_rate": 55,
            "cost_per_claim": 0.02,
            "re_review_count": 11,
        })
        assert [a.metric_key for a in fired] == ["sla_breach_rate", "human_override_rate", "re_review_count"]


# ── Test: check_alerts over stored rules ─────────────────────────────────

TODAY = date(2025, 6, 30)
CLIENT = "client-1"


class RuleStorage:
    """rules: stored alert_rules rows. series: slug → [(day, value)] or an Exception."""

    def __init__(self, rules=None, series=None):
        self.rules = list(rules or [])
        self.series = series or {}
        self.fetched = []
        self.insert_alert_rules = AsyncMock(side_effect=lambda rows: len(rows))

    async def fetch_alert_rules(self, client_id):
        return self.rules

    async def fetch_daily_series(self, client_id, definition, start, end):
        self.fetched.append((definition.slug, start, end))
        data = self.series.get(definition.slug, [])
        if isinstance(data, Exception):
            raise data
        return [DailyPoint(day=d, value=v) for d, v in data if start <= d <= end]


class TestCheckAlerts:
    @pytest.mark.asyncio
    async def test_latest_day_fires_threshold(self):
        storage = RuleStorage(
            rules=[_rule("sla_breach_rate", "gt", 20)],
            series={"sla_breach_rate": [(date(2025, 6, 29), 12.0), (date(2025, 6, 30), 31.5)]},
        )
        alerts = await check_alerts(CLIENT, MetricCatalog(), storage, today=TODAY)
        assert len(alerts) == 1
        assert alerts[0].metric_key == "sla_breach_rate"
        assert alerts[0].evidence["current_value"] == 31.5
        assert storage.fetched == [("sla_breach_rate", date(2025, 6, 29), TODAY)]

    @pytest.mark.asyncio
    async def test_change_pct_uses_previous_day(self):
        storage = RuleStorage(
            rules=[_rule("claims_received", "anomaly", 50, "warning")],
            series={"claims_received": [(date(2025, 6, 29), 10.0), (date(2025, 6, 30), 25.0)]},
        )
        alerts = await check_alerts(CLIENT, MetricCatalog(), storage, today=TODAY)
        assert len(alerts) == 1
        assert alerts[0].evidence["change_pct"] == 150.0
        assert alerts[0].evidence["previous_value"] == 10.0

    @pytest.mark.asyncio
    async def test_stale_series_not_evaluated(self):
        storage = RuleStorage(
            rules=[_rule("sla_breach_rate", "gt", 20)],
            series={"sla_breach_rate": [(date(2025, 6, 29), 99.0)]},
        )
        assert await check_alerts(CLIENT, MetricCatalog(), storage, today=TODAY) == []

    @pytest.mark.asyncio
    async def test_unknown_metric_and_failed_fetch_skipped(self):
        storage = RuleStorage(
            rules=[
                _rule("no_such_metric", "gt", 1),
                _rule("cost_per_claim", "gt", 0.05),
                _rule("sla_breach_rate", "gt", 20),
            ],
            series={
                "cost_per_claim": StorageError("exec_metric_query", "statement timeout"),
                "sla_breach_rate": [(TODAY, 40.0)],
            },
        )
        alerts = await check_alerts(CLIENT, MetricCatalog(), storage, today=TODAY)
        assert [a.metric_key for a in alerts] == ["sla_breach_rate"]
        assert [slug for slug, _, _ in storage.fetched] == ["cost_per_claim", "sla_breach_rate"]

    @pytest.mark.asyncio
    async def test_no_rules_without_seeding(self):
        storage = RuleStorage()
        assert await check_alerts(CLIENT, MetricCatalog(), storage, today=TODAY) == []
        storage.insert_alert_rules.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_seeds_defaults_then_evaluates(self):
        storage = RuleStorage(series={"sla_breach_rate": [(TODAY, 25.0)]})
        alerts = await check_alerts(CLIENT, MetricCatalog(), storage, today=TODAY, seed_missing=True)
        storage.insert_alert_rules.assert_awaited_once()
        seeded = storage.insert_alert_rules.await_args.args[0]
        assert seeded == seed_default_rules(CLIENT)
        assert [a.metric_key for a in alerts] == ["sla_breach_rate"]
        assert alerts[0].severity == "critical"
