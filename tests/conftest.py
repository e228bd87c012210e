"""Pytest fixtures."""

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from nearhelp.core.deps import get_engine
from nearhelp.core.identity import Identity
from nearhelp.db.base import Base
from nearhelp.db.session import get_db
from nearhelp.main import app
from nearhelp.models import User
from nearhelp.services.engine import EmergencyEngine
from tests.fakes import FakeNotifier, ManualScheduler

TEST_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="session")
def setup_db():
    """Create tables once for test session."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(setup_db):
    """Session factory on an emptied database."""
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    return TestingSessionLocal


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def nh(session_factory, scheduler, notifier):
    """Engine on the test database with manual time and a recording notifier."""
    eng = EmergencyEngine(session_factory, scheduler=scheduler, notifier=notifier)
    yield eng
    eng.emergencies.close()


@pytest.fixture
def make_user(session_factory):
    """Insert a user directly and return their Identity."""

    def _make(
        name: str,
        lat: float | None = None,
        lng: float | None = None,
        online: bool = False,
        last_active: datetime | None = None,
        phone: str | None = None,
    ) -> Identity:
        with session_factory() as db:
            user = User(
                email=f"{name.lower().replace(' ', '.')}@example.com",
                hashed_password="x",
                display_name=name,
                phone=phone,
                latitude=lat,
                longitude=lng,
                location_updated_at=last_active if lat is not None else None,
                is_online=online,
                last_active=last_active,
            )
            db.add(user)
            db.commit()
            return Identity(uid=user.id, display_name=name, email=user.email, phone=phone)

    return _make


@pytest.fixture
def client(session_factory):
    """Test client with overridden DB and engine."""
    api_engine = EmergencyEngine(session_factory)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_engine] = lambda: api_engine
    with TestClient(app) as c:
        yield c
    api_engine.emergencies.close()
    app.dependency_overrides.clear()
