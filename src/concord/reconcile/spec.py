"""Reconcile specs — which key and fields a source's candidates are compared on."""

from __future__ import annotations

from datetime import date, datetime
from functools import cached_property
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from concord.engine.errors import ItemValidationError

FieldType = Literal["str", "int", "float", "bool", "date", "datetime", "any"]

_ANNOTATIONS: dict[str, Any] = {
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "date": date,
    "datetime": datetime,
    "any": Any,
}


class FieldSpec(BaseModel):
    name: str
    type: FieldType = "any"
    required: bool = False


class ReconcileSpec(BaseModel):
    """Configuration-driven field set for one record type.

    The candidate is the source of truth for every configured field it
    carries. Fields it omits are neither compared nor written; an explicit
    null is a value.
    """

    record_type: str
    key_field: str
    fields: list[FieldSpec] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_config(cls, record_type: str, key_field: str, fields: list[Any] | None = None) -> "ReconcileSpec":
        """Accept plain field names or {name, type, required} tables."""
        parsed = [
            FieldSpec(name=f) if isinstance(f, str) else FieldSpec.model_validate(f)
            for f in (fields or [])
        ]
        return cls(record_type=record_type, key_field=key_field, fields=parsed)

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @cached_property
    def candidate_model(self) -> type[BaseModel]:
        # Positional attribute names keep arbitrary field names clear of BaseModel attributes
        definitions: dict[str, Any] = {}
        for i, spec in enumerate(self.fields):
            annotation = _ANNOTATIONS[spec.type]
            if spec.required:
                definitions[f"f{i}"] = (annotation, Field(..., alias=spec.name))
            else:
                definitions[f"f{i}"] = (annotation | None if annotation is not Any else Any, Field(None, alias=spec.name))
        return create_model(
            f"{self.record_type.title().replace('_', '')}Candidate",
            __config__=ConfigDict(extra="ignore"),
            **definitions,
        )

    def key_of(self, candidate: Mapping[str, Any]) -> str | None:
        """Natural key as a string, or None when missing or blank."""
        if not isinstance(candidate, Mapping):
            return None
        raw = candidate.get(self.key_field)
        if raw is None or isinstance(raw, (dict, list, bool)):
            return None
        key = str(raw).strip()
        return key or None

    def validate_candidate(self, candidate: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
        """Return (natural key, normalized values) or raise ItemValidationError.

        Values are JSON-normalized so they compare equal to what the record
        store hands back.
        """
        key = self.key_of(candidate)
        if key is None:
            raise ItemValidationError(f"Missing or blank natural key '{self.key_field}'")
        try:
            parsed = self.candidate_model.model_validate(dict(candidate))
        except ValidationError as e:
            raise ItemValidationError(_summarize(e), key=key) from e
        values = parsed.model_dump(mode="json", by_alias=True, exclude_unset=True)
        return key, values


def _summarize(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "<candidate>"
        parts.append(f"{loc}: {item.get('msg')}")
    return "; ".join(parts)
