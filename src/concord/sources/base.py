"""Base source adapter interface."""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator


@dataclass(frozen=True)
class SourceContext:
    """What an adapter is told about the run it is feeding."""

    tenant_id: str | None
    run_id: str
    trigger: str = "manual"
    cursor: Any = None  # resume position from the tenant's last completed run


class SourceAdapter(ABC):
    """Base class for all candidate sources.

    ``records`` yields candidate mappings lazily and in a stable order. It may
    raise mid-stream; the coordinator fails the run in that case.
    """

    supports_cursor: bool = False

    def __init__(self):
        self.cursor: Any = None

    async def open(self, context: SourceContext) -> None:
        """Prepare the stream. Raising here means the source is unavailable."""
        self.cursor = context.cursor

    @abstractmethod
    def records(self, context: SourceContext) -> AsyncIterator[dict[str, Any]]:
        """Yield candidate records for the tenant."""
        ...

    async def close(self) -> None:
        """Release resources."""

    def metadata(self) -> dict[str, Any]:
        """Adapter-reported facts recorded in the run details."""
        return {"type": type(self).__name__}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()
