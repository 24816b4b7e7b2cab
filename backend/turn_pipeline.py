"""
Turn pipeline — one conversational turn from LLM intent to QueryDescriptor.

  payload (untrusted) → RawIntent → ContextManager.resolve
    → catalog.ensure_fresh → validate_intent → compile_query (+ comparison)

The thread's context is committed only when the turn compiles, so a rejected
follow-up never overwrites a good prior context. Validation failures come back
with the offending field; compilation failures are defects and come back as a
generic "internal" error.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from engine import RawIntent
from engine.context_manager import ContextManager
from engine.errors import CompilationError, ValidationError
from engine.intent_validator import ValidatedIntent, validate_intent
from engine.metric_catalog import MetricCatalog
from engine.query_compiler import QueryDescriptor, compile_comparison, compile_query

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    ok: bool
    descriptor: Optional[QueryDescriptor] = None
    comparison: Optional[QueryDescriptor] = None
    intent: Optional[ValidatedIntent] = None
    error: Optional[ValidationError] = None
    warnings: list[str] = field(default_factory=list)

    def error_dict(self) -> Optional[dict]:
        return self.error.to_dict() if self.error else None


async def answer_turn(
    thread_id: str,
    client_id: str,
    payload: dict | RawIntent | None,
    catalog: MetricCatalog,
    contexts: ContextManager,
    today: Optional[date] = None,
) -> TurnResult:
    try:
        raw = payload if isinstance(payload, RawIntent) else RawIntent.from_llm(payload)
    except ValidationError as e:
        return TurnResult(ok=False, error=e)

    merged = contexts.resolve(thread_id, raw, commit=False)
    await catalog.ensure_fresh()

    ok, err, validated = validate_intent(merged, catalog, today=today)
    if not ok:
        logger.info("Turn on thread %s rejected: %s (%s)", thread_id, err.field, err.reason)
        return TurnResult(ok=False, error=err)

    try:
        descriptor = compile_query(validated, client_id)
        comparison = compile_comparison(validated, client_id)
    except CompilationError as e:
        return TurnResult(
            ok=False,
            intent=validated,
            error=ValidationError(
                "internal", f"Metric '{e.metric_slug}' could not be prepared. Please try another question."
            ),
        )

    contexts.commit(thread_id, merged)
    return TurnResult(
        ok=True,
        descriptor=descriptor,
        comparison=comparison,
        intent=validated,
        warnings=list(validated.warnings),
    )
