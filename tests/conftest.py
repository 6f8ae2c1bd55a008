"""Pytest configuration and fixtures for the field service API.

Every test gets a fresh in-memory SQLite database seeded with the
reference positions and permissions.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RATE_LIMIT", "10000/minute")
os.environ.setdefault("AUTO_CREATE_DB", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fieldservice.db import Base, get_db
from fieldservice.auth.security import create_access_token, get_password_hash
from fieldservice.forms import FORM_TYPES
from fieldservice.models.models import User, Position
from fieldservice.seed import seed_reference_data
from fieldservice.services.records import create_record
from fieldservice.storage.factory import get_storage
from fieldservice.storage.local_provider import LocalStorageProvider


BRANCH_A = "Branch A"
BRANCH_B = "Branch B"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    """Session with reference data loaded."""
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    seed_reference_data(session)
    yield session
    session.close()


@pytest.fixture
def storage(tmp_path):
    return LocalStorageProvider(str(tmp_path / "storage"))


@pytest.fixture
def make_user(db):
    """Factory: make_user("Admin 2", address="Branch A")."""
    counter = {"n": 0}

    def _make(position_name=None, address=BRANCH_A, role="user", firstname=None, lastname="Tester",
              password="secret-pass"):
        counter["n"] += 1
        n = counter["n"]
        position = None
        if position_name:
            position = db.query(Position).filter(Position.name == position_name).one()
        user = User(
            email=f"user{n}@example.com",
            username=f"user{n}",
            firstname=firstname or f"User{n}",
            lastname=lastname,
            address=address,
            position_id=position.id if position else None,
            role=role,
            password_hash=get_password_hash(password),
            is_active=True,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_record(db, storage):
    """Factory: make_record("job-order-request", creator, customer="ACME")."""
    def _make(slug, creator, **values):
        return create_record(db, FORM_TYPES[slug], values, creator, storage)

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(str(user.id))}"}

    return _headers


@pytest.fixture
def app(db, storage):
    """Application with the database and storage dependencies pointed at test fixtures."""
    from fieldservice.main import app as fastapi_app

    def _get_db():
        yield db

    fastapi_app.dependency_overrides[get_db] = _get_db
    fastapi_app.dependency_overrides[get_storage] = lambda: storage
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)
