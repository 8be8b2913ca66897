import os

os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key-0123456789")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from sqlalchemy.orm import sessionmaker

from order_gate.db.session import build_engine, init_db
from order_gate.services.sessions.store import SessionStore
from tests.helpers import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    # File-backed so that several threads see the same database.
    eng = build_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(clock):
    return SessionStore(max_age_seconds=7200, sweep_interval_seconds=60, clock=clock)
