"""Reconciliation decision and outcome types."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class DecisionKind(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"
    ERROR = "error"


@dataclass(frozen=True)
class FieldChange:
    old: Any
    new: Any


@dataclass(frozen=True)
class ReconciliationDecision:
    kind: DecisionKind
    key: str | None
    values: dict[str, Any] = field(default_factory=dict)
    changes: dict[str, FieldChange] = field(default_factory=dict)
    error: str | None = None

    @property
    def changed_fields(self) -> frozenset[str]:
        return frozenset(self.changes)

    @classmethod
    def create(cls, key: str, values: dict[str, Any]) -> "ReconciliationDecision":
        return cls(DecisionKind.CREATE, key, values=values)

    @classmethod
    def update(cls, key: str, values: dict[str, Any], changes: dict[str, FieldChange]) -> "ReconciliationDecision":
        return cls(DecisionKind.UPDATE, key, values=values, changes=changes)

    @classmethod
    def skip(cls, key: str, values: dict[str, Any]) -> "ReconciliationDecision":
        return cls(DecisionKind.SKIP, key, values=values)

    @classmethod
    def failed(cls, key: str | None, error: str) -> "ReconciliationDecision":
        return cls(DecisionKind.ERROR, key, error=error)


@dataclass(frozen=True)
class RecordScope:
    """Where a decision is applied: tenant, record type, and the run doing it."""

    tenant_id: str | None
    record_type: str
    run_id: str | None = None


@dataclass(frozen=True)
class AppliedResult:
    decision: ReconciliationDecision
    record_id: str | None = None


@dataclass(frozen=True)
class ApplyError:
    decision: ReconciliationDecision
    message: str


class Outcome(str, enum.Enum):
    """Counter bucket for one processed candidate."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(frozen=True)
class ItemOutcome:
    outcome: Outcome
    key: str | None
    error_kind: str | None = None  # "validation" or "apply"
    message: str | None = None

    @property
    def is_apply_failure(self) -> bool:
        return self.error_kind == "apply"
