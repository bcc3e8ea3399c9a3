"""Shared test fixtures for the ScanGuard test suite.

Uses an in-memory SQLite database with StaticPool so all sessions share the
same connection (committed data is visible across sessions).
"""

import uuid
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from scanguard.core.async_tasks import drain_background_tasks
from scanguard.database import Base, get_db
from scanguard.main import app
from scanguard.models import *  # noqa: ensure all models are loaded for create_all


# ---------------------------------------------------------------------------
# In-memory SQLite test engine (shared via StaticPool)
# ---------------------------------------------------------------------------

test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)
TestSession = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@event.listens_for(test_engine.sync_engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


# ---------------------------------------------------------------------------
# Auto-use: create/drop tables for every test
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
async def _setup_db(monkeypatch):
    """Create all tables before each test, drop after.

    Background escalations open their own session; point them at the test
    engine and let them finish before the tables go away.
    """
    monkeypatch.setattr("scanguard.services.escalation_service.async_session", TestSession)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await drain_background_tasks(timeout_seconds=2.0)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def db():
    """Yield a fresh AsyncSession for direct service-layer tests."""
    async with TestSession() as session:
        yield session


@pytest.fixture
async def client():
    """httpx AsyncClient wired to the FastAPI app with test DB override."""
    import httpx

    async def _override_get_db():
        async with TestSession() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def session_factory():
    """The test sessionmaker, for code that opens its own sessions."""
    return TestSession


@pytest.fixture
async def file_session_factory(tmp_path):
    """Sessionmaker on a file-backed SQLite database with a real pool.

    Each session gets its own connection, so concurrent writers contend
    the way they do in production.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'contention.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _pragmas(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 2, 10, 15, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------

def _new_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def make_manufacturer(db: AsyncSession):
    """Factory fixture: create a Manufacturer."""
    from scanguard.models.manufacturer import Manufacturer

    async def _make(name: str = None, **kwargs):
        manufacturer = Manufacturer(
            id=_new_id(),
            name=name or f"Manufacturer {_new_id()[:6]}",
            email=kwargs.pop("email", "ops@example.com"),
            **kwargs,
        )
        db.add(manufacturer)
        await db.commit()
        await db.refresh(manufacturer)
        return manufacturer

    return _make


@pytest.fixture
def make_product(db: AsyncSession):
    """Factory fixture: create a Product for a manufacturer."""
    from scanguard.models.manufacturer import Product

    async def _make(manufacturer_id: str, category: str = "drugs", name: str = "Paracetamol 500mg"):
        product = Product(
            id=_new_id(),
            manufacturer_id=manufacturer_id,
            name=name,
            category=category,
        )
        db.add(product)
        await db.commit()
        await db.refresh(product)
        return product

    return _make


@pytest.fixture
def make_batch(db: AsyncSession, make_manufacturer, make_product):
    """Factory fixture: create a batch of codes through the registry.

    Returns (manufacturer, product, batch, codes).
    """
    from scanguard.services import code_registry_service

    async def _make(quantity: int = 5, category: str = "drugs",
                    expiration_date: date = None, manufacturer=None, **kwargs):
        manufacturer = manufacturer or await make_manufacturer()
        product = await make_product(manufacturer.id, category=category)
        batch, codes = await code_registry_service.create_batch_codes(
            db,
            manufacturer_id=manufacturer.id,
            product_id=product.id,
            batch_number=kwargs.pop("batch_number", f"B-{_new_id()[:8]}"),
            expiration_date=expiration_date or (date.today() + timedelta(days=365)),
            quantity=quantity,
            **kwargs,
        )
        return manufacturer, product, batch, codes

    return _make


@pytest.fixture
def make_webhook(db: AsyncSession):
    """Factory fixture: register a webhook for an agency. Returns (webhook, secret)."""
    from scanguard.services import escalation_service

    async def _make(agency: str = "NAFDAC", url: str = "https://agency.example/hooks",
                    retry_attempts: int = 3, retry_interval_seconds: float = 300, **kwargs):
        return await escalation_service.register_webhook(
            db,
            agency,
            url,
            retry_attempts=retry_attempts,
            retry_interval_seconds=retry_interval_seconds,
            **kwargs,
        )

    return _make
