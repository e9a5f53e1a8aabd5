"""Pytest configuration and shared fixtures."""

import os

# Must be set before labflow reads its settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RATE_LIMIT_BACKEND"] = "memory"

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from labflow.api.deps import get_db
from labflow.api.main import app
from labflow.core.security import create_access_token
from labflow.db.base import Base
from labflow.db.session import build_engine
import labflow.db.models  # noqa: F401

from tests.factories import (
    assign_user,
    create_lab,
    create_matrix,
    create_user,
)


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    eng = build_engine("sqlite://")
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def db_session(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db_session):
    """TestClient sharing the test session with request handlers."""
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}
    return _headers


@pytest.fixture
def lab_setup(db_session):
    """
    A lab with an active matrix.

    instructor (step 1) and staff (step 2) are assigned to the lab;
    requester and admin are not.
    """
    lab = create_lab(db_session)
    instructor = create_user(db_session, role="instructor")
    staff = create_user(db_session, role="lab-staff")
    requester = create_user(db_session, role="requester")
    admin = create_user(db_session, role="admin")
    assign_user(db_session, instructor, lab)
    assign_user(db_session, staff, lab)
    matrix = create_matrix(db_session, lab=lab, step1=instructor, step2=staff)
    db_session.commit()
    return SimpleNamespace(
        lab=lab,
        instructor=instructor,
        staff=staff,
        requester=requester,
        admin=admin,
        matrix=matrix,
    )
