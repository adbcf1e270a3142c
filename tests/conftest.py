import os

# Settings are read at import time; pin them before anything under app/ loads.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "rzp_webhook_secret"
os.environ["LLM_API_KEY"] = "test-llm-key"

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.clock import FixedClock, get_clock
from app.db.base import Base
from app.db.session import get_db
from app.dependencies.auth import get_current_user_id
from app.models import User, UserRole
from app.models.user_role import ADMIN_ROLE
from app import models  # noqa: F401

NOW = datetime(2026, 2, 11, 12, 0, 0)


@pytest.fixture
def engine(tmp_path):
    # File-backed so threads in the concurrency tests share one database
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(email=None, admin=False):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            supabase_id=f"sb-{counter['n']}",
            is_active=True,
        )
        db.add(user)
        db.commit()
        if admin:
            db.add(UserRole(user_id=user.id, role=ADMIN_ROLE))
            db.commit()
        db.refresh(user)
        return user

    return _make


class CurrentUser:
    """Who the test client is authenticated as."""

    def __init__(self):
        self.user_id = None


@pytest.fixture
def current_user():
    return CurrentUser()


@pytest.fixture
def client(session_factory, clock, current_user):
    from app.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user_id] = lambda: current_user.user_id
    app.dependency_overrides[get_clock] = lambda: clock
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
