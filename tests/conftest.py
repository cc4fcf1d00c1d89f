"""Shared test fixtures for Concord tests."""

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession

from concord.core.database import init_engine, create_tables, dispose_engine, get_session_factory
from concord.daemon.main import create_app
from concord.engine.coordinator import EngineSettings, RunCoordinator
from concord.reconcile.spec import ReconcileSpec
from concord.sources.registry import SourceBinding
from concord.sources.static import StaticSource


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep concord.toml lookups and env settings away from the developer's machine."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CONCORD_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("CONCORD_API_KEY", "test_key")
    monkeypatch.delenv("CONCORD_DATABASE_URL", raising=False)
    monkeypatch.delenv("CONCORD_TENANT", raising=False)


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path):
    """File-backed SQLite per test; each session gets its own connection."""
    init_engine(f"sqlite+aiosqlite:///{tmp_path}/concord.db")
    await create_tables()
    yield get_session_factory()
    await dispose_engine()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncSession:
    """Get a database session for direct DB operations in tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def contact_spec() -> ReconcileSpec:
    return ReconcileSpec.from_config(
        record_type="contact",
        key_field="id",
        fields=["name", {"name": "email", "type": "str"}, {"name": "age", "type": "int"}],
    )


@pytest.fixture
def make_binding(contact_spec):
    """Build a static-source binding; ``records`` may be a callable for per-run data."""

    def _make(records=(), name="contacts", spec=None, resume=False, **source_kwargs):
        def factory():
            rows = records() if callable(records) else records
            return StaticSource(rows, **source_kwargs)

        return SourceBinding(name=name, factory=factory, spec=spec or contact_spec, resume=resume)

    return _make


@pytest.fixture
def fast_settings() -> EngineSettings:
    return EngineSettings(
        batch_size=10,
        max_concurrent=4,
        flush_every=5,
        flush_interval_seconds=60,
        max_run_seconds=30,
        stale_after_seconds=900,
        apply_error_threshold=5,
        max_detail_items=10,
    )


SAMPLE_CONTACTS = [
    {"id": "c1", "name": "Alice", "email": "alice@example.com", "age": 31},
    {"id": "c2", "name": "Bob", "email": "bob@example.com", "age": 42},
    {"id": "c3", "name": "Carol", "email": "carol@example.com", "age": 27},
]


@pytest.fixture
def sample_contacts() -> list[dict]:
    return [dict(c) for c in SAMPLE_CONTACTS]


@pytest_asyncio.fixture(scope="function")
async def coordinator(session_factory, make_binding, sample_contacts, fast_settings):
    coord = RunCoordinator(session_factory, [make_binding(sample_contacts)], settings=fast_settings)
    yield coord
    await coord.shutdown()


@pytest_asyncio.fixture(scope="function")
async def app(coordinator):
    """App wired to the test database; ASGITransport does not run the lifespan."""
    _app = create_app()
    _app.state.coordinator = coordinator
    yield _app


@pytest_asyncio.fixture(scope="function")
async def client(app):
    """Async HTTP client pointed at the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"Authorization": "Bearer test_key"},
    ) as c:
        yield c


@pytest_asyncio.fixture(scope="function")
async def unauthed_client(app):
    """Async HTTP client without auth."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
