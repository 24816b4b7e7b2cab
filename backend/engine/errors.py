"""
Error taxonomy for the intent → query pipeline and anomaly detection.

ValidationError        user-facing, recoverable by asking a different question
CompilationError       internal defect (e.g. a metric with no template)
InsufficientDataError  anomaly detection only; the metric is excluded, not failed
StorageError           an external fetch or persist failed
"""

from __future__ import annotations

from typing import Any, Optional


class AnalyticsError(Exception):
    """Base class for every error raised by the analytics core."""


class ValidationError(AnalyticsError):
    """An intent field was rejected. `field` names which one."""

    def __init__(self, field: str, reason: str, value: Any = None):
        super().__init__(reason)
        self.field = field
        self.reason = reason
        self.value = value

    def to_dict(self) -> dict:
        return {
            "error": "validation_error",
            "field": self.field,
            "reason": self.reason,
        }

    def __repr__(self) -> str:
        return f"ValidationError(field={self.field!r}, reason={self.reason!r})"


class CompilationError(AnalyticsError):
    def __init__(self, metric_slug: str, reason: str):
        super().__init__(f"Cannot compile metric '{metric_slug}': {reason}")
        self.metric_slug = metric_slug
        self.reason = reason


class InsufficientDataError(AnalyticsError):
    def __init__(self, metric_slug: str, points: int, required: int):
        super().__init__(
            f"Metric '{metric_slug}' has {points} data points, need at least {required}"
        )
        self.metric_slug = metric_slug
        self.points = points
        self.required = required


class StorageError(AnalyticsError):
    def __init__(self, operation: str, reason: str, metric_slug: Optional[str] = None):
        super().__init__(f"{operation} failed: {reason}")
        self.operation = operation
        self.reason = reason
        self.metric_slug = metric_slug
