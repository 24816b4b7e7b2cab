"""
Query Engine — shared models for the intent → query pipeline.

Pipeline:
  LLM intent (untrusted) → context_manager → intent_validator → query_compiler
  → QueryDescriptor (template + bound params) handed to the execution layer.

RawIntent is the only shape that crosses the LLM boundary. Nothing in it is
trusted: every field is re-checked by intent_validator against the catalog.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from engine.errors import ValidationError


class RawFilter(BaseModel):
    """One filter clause as the LLM emitted it."""
    field: str
    operator: str
    value: Any = None        # str | number | bool | list of scalars


class RawTimeRange(BaseModel):
    start: Optional[str] = None     # "YYYY-MM-DD"
    end: Optional[str] = None
    value: Optional[str] = None     # LLM label, e.g. "last_30_days"


class RawIntent(BaseModel):
    """Structured intent produced by the NL-translation collaborator."""
    intent_type: Optional[str] = None   # "query" | "refine" | "drill_down" | "compare" | "new_topic"
    metric: Optional[str] = None
    dimensions: list[str] = Field(default_factory=list)
    filters: list[RawFilter] = Field(default_factory=list)
    time_range: Optional[RawTimeRange] = None
    time_grain: Optional[str] = None
    limit: Optional[Any] = None
    chart_type: Optional[str] = None
    comparison: Optional[str] = None    # offset, e.g. "-1_month"

    @field_validator("metric", mode="before")
    @classmethod
    def _metric_slug(cls, value):
        # The LLM emits {"slug": ..., "display_name": ...}
        if isinstance(value, dict):
            return value.get("slug")
        return value

    @field_validator("comparison", mode="before")
    @classmethod
    def _comparison_offset(cls, value):
        if isinstance(value, dict):
            return value.get("offset")
        return value

    @field_validator("dimensions", "filters", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return [] if value is None else value

    @classmethod
    def from_llm(cls, payload: dict | None) -> "RawIntent":
        """Parse LLM output. Malformed payloads raise ValidationError(field="intent")."""
        if payload is None:
            return cls()
        if not isinstance(payload, dict):
            raise ValidationError("intent", "Intent must be a JSON object.")
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            location = ".".join(str(p) for p in first.get("loc", ())) or "intent"
            raise ValidationError(
                location,
                f"Malformed intent field '{location}': {first.get('msg', 'invalid value')}",
            ) from e
