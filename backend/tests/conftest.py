"""
conftest.py — Shared pytest fixtures for the ExtrudeIQ backend test suite.

Pure pricing/die tests need no fixtures beyond engine instances. Orchestrator
and route tests run against a file-backed SQLite database (aiosqlite), one per
test, seeded with a customer and an aluminum material priced from 2026-01-01.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``extrudeiq.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
from datetime import date, datetime, timedelta, timezone

import pytest
import pytest_asyncio

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any extrudeiq imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

CUSTOMER_ID = "cust-0001"
MATERIAL_ID = "mat-6063"
DENSITY = 0.0975            # 6063 aluminum, lb/in³
PRICE_JAN = 2.00            # USD/lb effective 2026-01-01
FIXED_NOW = datetime(2026, 1, 15, 9, 30, 0, tzinfo=timezone.utc)


def enable_sqlite_savepoints(sync_engine):
    """pysqlite/aiosqlite defer BEGIN; emit it ourselves so SAVEPOINT nests correctly."""
    @event.listens_for(sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def seed_database(sync_url: str) -> None:
    """Create the schema and baseline rows through a plain sync engine."""
    from extrudeiq.db import Base
    from extrudeiq.models.orm_models import Customer, Material, MaterialPrice

    engine = create_engine(sync_url)
    with engine.connect() as conn:
        # readers keep a snapshot while another session commits
        conn.exec_driver_sql("PRAGMA journal_mode=WAL")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        session.add(Customer(id=CUSTOMER_ID, name="Acme Fenestration"))
        session.add(Material(id=MATERIAL_ID, family="Aluminum", grade="6063-T5", density_lb_in3=DENSITY))
        session.add(MaterialPrice(
            material_id=MATERIAL_ID, price_per_lb=PRICE_JAN,
            effective_date=date(2026, 1, 1), source="seed",
        ))
        session.commit()
    engine.dispose()


def make_token(user_id: str, role: str, minutes: int = 30) -> str:
    """Bearer token as the external identity provider would issue it."""
    from jose import jwt
    from extrudeiq.api.deps import ALGORITHM, SECRET_KEY

    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    return jwt.encode({"sub": user_id, "role": role, "exp": expire}, SECRET_KEY, algorithm=ALGORITHM)


# ---------------------------------------------------------------------------
# Pricing fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def default_pricing_engine():
    """PricingEngine with multiplier 2.5 and the default EAU/MOQ curve (k=0.08, f_min=0.85)."""
    from extrudeiq.services.pricing_engine import PricingEngine
    return PricingEngine()


@pytest.fixture(scope="session")
def default_die_settings():
    from extrudeiq.services.die_cost_estimator import DieSettings
    return DieSettings()


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sqlite_path(tmp_path):
    path = tmp_path / "extrudeiq_test.db"
    seed_database(f"sqlite:///{path}")
    return path


@pytest_asyncio.fixture
async def session_factory(sqlite_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{sqlite_path}")
    enable_sqlite_savepoints(engine.sync_engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def estimator():
    from extrudeiq.services.quote_orchestrator import Caller
    return Caller(user_id="user-estimator", role="estimator")


@pytest.fixture
def admin():
    from extrudeiq.services.quote_orchestrator import Caller
    return Caller(user_id="user-admin", role="admin")


@pytest.fixture
def viewer():
    from extrudeiq.services.quote_orchestrator import Caller
    return Caller(user_id="user-viewer", role="viewer")


@pytest.fixture
def clock():
    """Mutable clock: set ``clock.now`` to move time for the orchestrator."""
    class _Clock:
        now = FIXED_NOW

        def __call__(self):
            return self.now

    return _Clock()


@pytest.fixture
def orchestrator(clock):
    from extrudeiq.services.quote_orchestrator import QuoteOrchestrator
    return QuoteOrchestrator(clock=clock)


@pytest.fixture
def quote_payload():
    return {
        "customer_id": CUSTOMER_ID,
        "material_id": MATERIAL_ID,
        "finished_length_in": 48,
        "area_in2": 0.2,
        "eau_base": 1000,
    }
