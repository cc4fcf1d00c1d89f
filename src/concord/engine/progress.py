"""Run counters and the structured details summary."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from concord.reconcile.types import ItemOutcome, Outcome


@dataclass
class RunCounters:
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0

    def record(self, outcome: Outcome) -> None:
        self.processed += 1
        if outcome is Outcome.CREATED:
            self.created += 1
        elif outcome is Outcome.UPDATED:
            self.updated += 1
        elif outcome is Outcome.SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1

    def as_columns(self) -> dict[str, int]:
        return {
            "processed_count": self.processed,
            "created_count": self.created,
            "updated_count": self.updated,
            "skipped_count": self.skipped,
            "error_count": self.errors,
        }

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class RunDetails:
    """Collects per-source counters and a bounded list of item errors."""

    def __init__(self, max_items: int = 50):
        self.max_items = max_items
        self.sources: dict[str, dict[str, Any]] = {}
        self._source_counters: dict[str, RunCounters] = {}
        self.errors: list[dict[str, Any]] = []
        self.errors_truncated = 0

    def source(self, name: str, record_type: str) -> dict[str, Any]:
        if name not in self.sources:
            self.sources[name] = {"record_type": record_type}
            self._source_counters[name] = RunCounters()
        return self.sources[name]

    def record(self, source: str, item: ItemOutcome) -> None:
        self._source_counters[source].record(item.outcome)
        if item.outcome is not Outcome.ERROR:
            return
        if len(self.errors) < self.max_items:
            self.errors.append({
                "source": source,
                "key": item.key,
                "kind": item.error_kind,
                "message": item.message,
            })
        else:
            self.errors_truncated += 1

    def build(self, **summary: Any) -> dict[str, Any]:
        """Render the JSON document stored on the run; None-valued keys are dropped."""
        details: dict[str, Any] = {k: v for k, v in summary.items() if v is not None}
        details["sources"] = {
            name: {**entry, **self._source_counters[name].as_dict()}
            for name, entry in self.sources.items()
        }
        if self.errors:
            details["errors"] = list(self.errors)
        if self.errors_truncated:
            details["errors_truncated"] = self.errors_truncated
        return details
