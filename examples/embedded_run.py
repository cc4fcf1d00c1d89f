"""Embedded run — drive the coordinator without the daemon.

Demonstrates:
- Building source bindings from a config dict
- One run per tenant against a local SQLite store
- A second pass that only updates what changed
"""

import asyncio
import logging

from concord.core.database import create_tables, dispose_engine, get_session_factory, init_engine
from concord.engine.coordinator import EngineSettings, RunCoordinator
from concord.sources.registry import SourceRegistry

SOURCES = {
    "contacts": {
        "type": "static",
        "record_type": "contact",
        "key_field": "id",
        "fields": ["name", {"name": "email", "type": "str"}],
        "records": {
            "acme": [
                {"id": "c1", "name": "Alice", "email": "alice@acme.io"},
                {"id": "c2", "name": "Bob", "email": "bob@acme.io"},
            ],
            "globex": [
                {"id": "c1", "name": "Hank", "email": "hank@globex.com"},
            ],
        },
    },
}


async def main():
    init_engine("sqlite+aiosqlite:///embedded.db")
    await create_tables()

    coordinator = RunCoordinator(
        get_session_factory(),
        SourceRegistry(SOURCES).bindings(),
        settings=EngineSettings(batch_size=50, max_concurrent=2),
    )

    for tenant in ("acme", "globex"):
        result = await coordinator.run(tenant)
        print(f"{tenant}: {result.status} {result.counters.as_dict()}")

    # Same data again: everything is skipped
    result = await coordinator.run("acme")
    print(f"acme (again): {result.status} {result.counters.as_dict()}")

    await dispose_engine()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(name)s | %(levelname)s | %(message)s")
    asyncio.run(main())
