"""
Context Manager — carries the previous turn's intent into follow-up questions.
===============================================================================
Per thread, each turn is either:

  FRESH       the new intent stands alone; prior context is discarded
  REFINEMENT  the new intent is merged onto the prior one

classify_turn() makes the call explicitly:
  1. no prior context                           → FRESH
  2. intent_type == "new_topic"                 → FRESH
  3. metric omitted                             → REFINEMENT
  4. intent_type in {refine, drill_down, compare} → REFINEMENT
  5. anything else                              → FRESH

Refinement merge:
  - metric, dimensions, time range, grain, chart type, comparison: inherited
    unless the new intent sets them
  - filters: a new filter on a field already filtered replaces it in place;
    filters on new fields are appended

Storage is one ConversationContext per thread, overwritten on commit. Two
turns racing on one thread resolve last-write-wins; callers are expected to
serialise turns per thread.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional, Protocol

from engine import RawFilter, RawIntent, RawTimeRange

logger = logging.getLogger(__name__)

REFINING_INTENTS = frozenset({"refine", "drill_down", "compare"})


class TurnKind(str, Enum):
    FRESH = "fresh"
    REFINEMENT = "refinement"


@dataclass
class ConversationContext:
    metric: Optional[str] = None
    dimensions: list[str] = field(default_factory=list)
    filters: list[dict] = field(default_factory=list)     # {field, operator, value}
    time_range: Optional[dict] = None                     # {start, end, value}
    time_grain: Optional[str] = None
    chart_type: Optional[str] = None
    comparison: Optional[str] = None
    turn_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> ConversationContext:
        if not data:
            return cls()
        return cls(
            metric=data.get("metric"),
            dimensions=list(data.get("dimensions") or []),
            filters=[dict(f) for f in data.get("filters") or []],
            time_range=data.get("time_range"),
            time_grain=data.get("time_grain"),
            chart_type=data.get("chart_type"),
            comparison=data.get("comparison"),
            turn_count=data.get("turn_count", 0),
        )

    @classmethod
    def from_intent(cls, intent: RawIntent, turn_count: int) -> ConversationContext:
        return cls(
            metric=intent.metric,
            dimensions=list(intent.dimensions),
            filters=[f.model_dump() for f in intent.filters],
            time_range=intent.time_range.model_dump() if intent.time_range else None,
            time_grain=intent.time_grain,
            chart_type=intent.chart_type,
            comparison=intent.comparison,
            turn_count=turn_count,
        )

    def to_intent(self) -> RawIntent:
        return RawIntent(
            metric=self.metric,
            dimensions=list(self.dimensions),
            filters=[RawFilter(**f) for f in self.filters],
            time_range=RawTimeRange(**self.time_range) if self.time_range else None,
            time_grain=self.time_grain,
            chart_type=self.chart_type,
            comparison=self.comparison,
        )


class ContextStore(Protocol):
    def get(self, thread_id: str) -> Optional[ConversationContext]: ...

    def put(self, thread_id: str, context: ConversationContext) -> None: ...

    def forget(self, thread_id: str) -> None: ...


class InMemoryContextStore:
    """Process-local store. One context per thread, replaced on every put."""

    def __init__(self):
        self._threads: dict[str, ConversationContext] = {}

    def get(self, thread_id: str) -> Optional[ConversationContext]:
        return self._threads.get(thread_id)

    def put(self, thread_id: str, context: ConversationContext) -> None:
        self._threads[thread_id] = context

    def forget(self, thread_id: str) -> None:
        self._threads.pop(thread_id, None)

    def __len__(self) -> int:
        return len(self._threads)


def classify_turn(raw: RawIntent, prior: Optional[ConversationContext]) -> TurnKind:
    if prior is None or not prior.metric:
        return TurnKind.FRESH
    intent_type = (raw.intent_type or "").strip().lower()
    if intent_type == "new_topic":
        return TurnKind.FRESH
    if not raw.metric:
        return TurnKind.REFINEMENT
    if intent_type in REFINING_INTENTS:
        return TurnKind.REFINEMENT
    return TurnKind.FRESH


def merge_filters(prior: list[RawFilter], new: list[RawFilter]) -> list[RawFilter]:
    merged = list(prior)
    for clause in new:
        for i, existing in enumerate(merged):
            if existing.field == clause.field:
                merged[i] = clause
                break
        else:
            merged.append(clause)
    return merged


def merge_intent(prior: RawIntent, raw: RawIntent) -> RawIntent:
    """Overlay a refinement onto the prior resolved intent."""
    return RawIntent(
        intent_type=raw.intent_type,
        metric=raw.metric or prior.metric,
        dimensions=list(raw.dimensions) or list(prior.dimensions),
        filters=merge_filters(prior.filters, raw.filters),
        time_range=raw.time_range or prior.time_range,
        time_grain=raw.time_grain or prior.time_grain,
        limit=raw.limit if raw.limit is not None else prior.limit,
        chart_type=raw.chart_type or prior.chart_type,
        comparison=raw.comparison or prior.comparison,
    )


class ContextManager:
    """
    Resolves each turn's raw intent against the thread's stored context.

        manager = ContextManager()
        merged = manager.resolve("thread-1", raw)          # merge + commit
        merged = manager.resolve("thread-1", raw, commit=False)
        manager.commit("thread-1", merged)                 # after the turn succeeds
    """

    def __init__(self, store: Optional[ContextStore] = None):
        self.store = store if store is not None else InMemoryContextStore()

    def resolve(
        self,
        thread_id: str,
        raw: RawIntent,
        history: Optional[ConversationContext | dict] = None,
        commit: bool = True,
    ) -> RawIntent:
        """
        history, when given, replaces the stored context for this turn (for
        callers that persist context alongside their chat messages).
        """
        prior = self._prior(thread_id, history)
        kind = classify_turn(raw, prior)

        if kind is TurnKind.REFINEMENT:
            merged = merge_intent(prior.to_intent(), raw)
        else:
            merged = raw.model_copy(deep=True)

        logger.debug(
            "Thread %s turn %d: %s (metric=%s)",
            thread_id, (prior.turn_count if prior else 0) + 1, kind.value, merged.metric,
        )
        if commit:
            self.commit(thread_id, merged, prior)
        return merged

    def commit(
        self,
        thread_id: str,
        resolved: RawIntent,
        prior: Optional[ConversationContext] = None,
    ) -> ConversationContext:
        """Overwrite the thread's context with the turn's resolved intent."""
        if prior is None:
            prior = self.store.get(thread_id)
        context = ConversationContext.from_intent(
            resolved, (prior.turn_count if prior else 0) + 1
        )
        self.store.put(thread_id, context)
        return context

    def current(self, thread_id: str) -> Optional[ConversationContext]:
        return self.store.get(thread_id)

    def forget(self, thread_id: str) -> None:
        self.store.forget(thread_id)

    def _prior(
        self, thread_id: str, history: Optional[ConversationContext | dict],
    ) -> Optional[ConversationContext]:
        if history is None:
            return self.store.get(thread_id)
        if isinstance(history, dict):
            return ConversationContext.from_dict(history) if history else None
        return history
