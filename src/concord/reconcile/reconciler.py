"""Per-candidate create/update/skip decisions and how they are applied."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from concord.engine.errors import ApplyFailure, ItemValidationError
from concord.reconcile.spec import ReconcileSpec
from concord.reconcile.target import TargetStore
from concord.reconcile.types import (
    AppliedResult,
    ApplyError,
    DecisionKind,
    FieldChange,
    ItemOutcome,
    Outcome,
    ReconciliationDecision,
    RecordScope,
)

logger = logging.getLogger("concord.reconciler")

_MISSING = object()

_OUTCOMES = {
    DecisionKind.CREATE: Outcome.CREATED,
    DecisionKind.UPDATE: Outcome.UPDATED,
    DecisionKind.SKIP: Outcome.SKIPPED,
}


def decide(
    spec: ReconcileSpec,
    candidate: Mapping[str, Any],
    current: Mapping[str, Any] | None,
) -> ReconciliationDecision:
    """Classify a candidate against the current persisted fields. Pure."""
    try:
        key, values = spec.validate_candidate(candidate)
    except ItemValidationError as e:
        return ReconciliationDecision.failed(e.key, str(e))

    if current is None:
        return ReconciliationDecision.create(key, values)

    changes = {}
    for name, new in values.items():
        old = current.get(name, _MISSING)
        if old is _MISSING:
            if new is not None:
                changes[name] = FieldChange(old=None, new=new)
        elif old != new:
            changes[name] = FieldChange(old=old, new=new)

    if changes:
        return ReconciliationDecision.update(key, values, changes)
    return ReconciliationDecision.skip(key, values)


class Reconciler:
    """Reconciles candidates of one record type into a target store."""

    def __init__(self, spec: ReconcileSpec, target: TargetStore):
        self.spec = spec
        self.target = target

    def decide(self, candidate: Mapping[str, Any], current: Mapping[str, Any] | None) -> ReconciliationDecision:
        return decide(self.spec, candidate, current)

    async def apply(self, decision: ReconciliationDecision, scope: RecordScope) -> AppliedResult | ApplyError:
        """Execute a decision. Store rejections come back as ApplyError."""
        if decision.kind is DecisionKind.ERROR:
            raise ValueError("Error decisions are counted, never applied")
        if decision.kind is DecisionKind.SKIP:
            return AppliedResult(decision)

        try:
            if decision.kind is DecisionKind.CREATE:
                record_id = await self.target.create(scope, decision.key, decision.values)
            else:
                changed = {name: change.new for name, change in decision.changes.items()}
                record_id = await self.target.update(scope, decision.key, changed)
        except ApplyFailure as e:
            return ApplyError(decision, str(e))
        return AppliedResult(decision, record_id=record_id)

    async def reconcile(self, candidate: Mapping[str, Any], scope: RecordScope) -> ItemOutcome:
        """Look up, decide, and apply one candidate; always lands in one bucket."""
        key = self.spec.key_of(candidate)
        current = None
        if key is not None:
            try:
                current = await self.target.get(scope, key)
            except ApplyFailure as e:
                logger.warning(f"Lookup failed for {scope.record_type}/{key}: {e}")
                return ItemOutcome(Outcome.ERROR, key, error_kind="apply", message=str(e))

        decision = self.decide(candidate, current)
        if decision.kind is DecisionKind.ERROR:
            logger.warning(f"Invalid {scope.record_type} candidate (key={decision.key}): {decision.error}")
            return ItemOutcome(Outcome.ERROR, decision.key, error_kind="validation", message=decision.error)

        result = await self.apply(decision, scope)
        if isinstance(result, ApplyError):
            logger.warning(f"Apply failed for {scope.record_type}/{decision.key}: {result.message}")
            return ItemOutcome(Outcome.ERROR, decision.key, error_kind="apply", message=result.message)
        return ItemOutcome(_OUTCOMES[decision.kind], decision.key)
