"""
Insights — shared Pydantic models for anomaly detection and alert rules.

  AnomalyDetector  — z-score scan over daily metric series   ($0, no LLM)
  alert_rules      — threshold rules from the alert_rules table ($0, no LLM)
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class DailyPoint(BaseModel):
    """One (date, value) pair of a DailyMetricSeries."""
    day: date
    value: float


class AnomalyEvent(BaseModel):
    """One detected anomaly. Never mutated; a new run produces a new event."""
    model_config = ConfigDict(frozen=True)

    metric_slug: str
    direction: str               # 'up' | 'down'
    z_score: float
    current_value: float
    baseline_mean: float
    baseline_std_dev: float
    severity: str                # 'critical', 'warning', 'info'
    detected_at: datetime

    def to_record(self, client_id: str) -> dict:
        """Row shape of the anomaly_events table."""
        return {
            "client_id": client_id,
            "metric_slug": self.metric_slug,
            "direction": "spike" if self.direction == "up" else "drop",
            "z_score": round(self.z_score, 4),
            "current_value": self.current_value,
            "baseline_mean": self.baseline_mean,
            "baseline_stddev": self.baseline_std_dev,
            "severity": self.severity,
            "detected_at": self.detected_at.isoformat(),
        }


class AlertRule(BaseModel):
    metric_slug: str
    condition: str               # 'gt' | 'lt' | 'eq' | 'change_pct'
    threshold: float
    severity: str = "warning"
    is_active: bool = True
    id: Optional[str] = None


class AlertResult(BaseModel):
    """One fired alert from the rules engine."""
    alert_type: str              # 'threshold' or 'change_pct'
    severity: str                # 'critical', 'warning', 'info'
    title: str
    summary: str
    evidence: dict = Field(default_factory=dict)
    metric_key: Optional[str] = None
