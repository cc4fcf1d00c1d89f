"""Target stores hold the persisted state candidates are reconciled against."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from concord.engine.errors import ApplyFailure
from concord.reconcile.types import RecordScope
from concord.repositories.record_repo import RecordRepository


class TargetStore(ABC):
    """Contract the reconciler applies decisions through.

    Each write is atomic on its own. Failures surface as ``ApplyFailure``.
    """

    @abstractmethod
    async def get(self, scope: RecordScope, key: str) -> dict[str, Any] | None:
        """Current reconciled fields for ``key``, or None when absent."""
        ...

    @abstractmethod
    async def create(self, scope: RecordScope, key: str, values: dict[str, Any]) -> str:
        """Insert a record; returns its id."""
        ...

    @abstractmethod
    async def update(self, scope: RecordScope, key: str, changes: dict[str, Any]) -> str:
        """Write only ``changes`` onto an existing record; returns its id."""
        ...


class SqlTargetStore(TargetStore):
    """Stores reconciled records as JSON documents, one transaction per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, scope: RecordScope, key: str) -> dict[str, Any] | None:
        try:
            async with self._session_factory() as session:
                record = await RecordRepository(session).get(scope.tenant_id, scope.record_type, key)
                return dict(record.fields or {}) if record else None
        except SQLAlchemyError as e:
            raise ApplyFailure(f"Lookup failed for '{key}': {type(e).__name__}: {e}") from e

    async def create(self, scope: RecordScope, key: str, values: dict[str, Any]) -> str:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    record = await RecordRepository(session).insert(
                        scope.tenant_id, scope.record_type, key, values, run_id=scope.run_id
                    )
                return record.id
        except SQLAlchemyError as e:
            raise ApplyFailure(f"Insert rejected for '{key}': {type(e).__name__}: {e}") from e

    async def update(self, scope: RecordScope, key: str, changes: dict[str, Any]) -> str:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    repo = RecordRepository(session)
                    record = await repo.get(scope.tenant_id, scope.record_type, key)
                    if record is None:
                        raise ApplyFailure(f"Record '{key}' disappeared before update")
                    await repo.update_fields(record, changes, run_id=scope.run_id)
                return record.id
        except SQLAlchemyError as e:
            raise ApplyFailure(f"Update rejected for '{key}': {type(e).__name__}: {e}") from e


class MemoryTargetStore(TargetStore):
    """Dict-backed target store for dry runs and tests."""

    def __init__(self):
        self.records: dict[tuple[str | None, str, str], dict[str, Any]] = {}
        self.writes: list[tuple[str, str, dict[str, Any]]] = []

    async def get(self, scope: RecordScope, key: str) -> dict[str, Any] | None:
        record = self.records.get((scope.tenant_id, scope.record_type, key))
        return dict(record) if record is not None else None

    async def create(self, scope: RecordScope, key: str, values: dict[str, Any]) -> str:
        ident = (scope.tenant_id, scope.record_type, key)
        if ident in self.records:
            raise ApplyFailure(f"Duplicate natural key '{key}'")
        self.records[ident] = dict(values)
        self.writes.append(("create", key, dict(values)))
        return key

    async def update(self, scope: RecordScope, key: str, changes: dict[str, Any]) -> str:
        ident = (scope.tenant_id, scope.record_type, key)
        if ident not in self.records:
            raise ApplyFailure(f"Record '{key}' disappeared before update")
        self.records[ident] = {**self.records[ident], **changes}
        self.writes.append(("update", key, dict(changes)))
        return key
