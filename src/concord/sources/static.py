"""Static sources: candidates held in memory or read from a JSON file."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Mapping

from concord.sources.base import SourceAdapter, SourceContext


class StaticSource(SourceAdapter):
    """Serves a fixed list of candidates, optionally per tenant.

    ``records`` may be a list (served to every tenant) or a mapping of
    tenant id to list. ``fail_after`` raises after that many records to
    simulate a source dropping mid-stream.
    """

    supports_cursor = True

    def __init__(
        self,
        records: Iterable[Mapping[str, Any]] | Mapping[str, Iterable[Mapping[str, Any]]] = (),
        fail_after: int | None = None,
        delay: float = 0.0,
    ):
        super().__init__()
        if isinstance(records, Mapping):
            self._by_tenant = {tenant: [dict(r) for r in rows] for tenant, rows in records.items()}
            self._shared = None
        else:
            self._by_tenant = {}
            self._shared = [dict(r) for r in records]
        self.fail_after = fail_after
        self.delay = delay
        self.served = 0

    def _rows_for(self, tenant_id: str | None) -> list[dict[str, Any]]:
        if self._shared is not None:
            return self._shared
        return self._by_tenant.get(tenant_id, [])

    async def records(self, context: SourceContext) -> AsyncIterator[dict[str, Any]]:
        rows = self._rows_for(context.tenant_id)
        start = int(self.cursor or 0)
        for position, row in enumerate(rows[start:], start=start):
            if self.fail_after is not None and self.served >= self.fail_after:
                raise ConnectionError(f"Source dropped after {self.served} records")
            if self.delay:
                await asyncio.sleep(self.delay)
            self.served += 1
            self.cursor = position + 1
            yield dict(row)

    def metadata(self) -> dict[str, Any]:
        return {"type": "static", "served": self.served}


class JsonFileSource(SourceAdapter):
    """Reads candidates from a JSON array or JSON-lines file.

    ``path`` may contain ``{tenant}``, substituted with the tenant id (or
    ``system`` for system-wide runs).
    """

    def __init__(self, path: str, records_path: str | None = None):
        super().__init__()
        self.path_template = path
        self.records_path = records_path
        self._path: Path | None = None
        self._count = 0

    async def open(self, context: SourceContext) -> None:
        await super().open(context)
        path = Path(self.path_template.format(tenant=context.tenant_id or "system")).expanduser()
        if not path.is_file():
            raise FileNotFoundError(f"Source file not found: {path}")
        self._path = path

    async def records(self, context: SourceContext) -> AsyncIterator[dict[str, Any]]:
        text = await asyncio.to_thread(self._path.read_text)
        if self._path.suffix in (".jsonl", ".ndjson"):
            rows = (json.loads(line) for line in text.splitlines() if line.strip())
        else:
            data = json.loads(text)
            if self.records_path:
                for key in self.records_path.split("."):
                    data = data[key]
            rows = data if isinstance(data, list) else [data]
        for row in rows:
            self._count += 1
            yield row

    def metadata(self) -> dict[str, Any]:
        return {"type": "json_file", "path": str(self._path) if self._path else None, "read": self._count}
