"""
Shared fixtures for the allocation reports test suite.

Nothing here talks to Postgres or Firebase: routes are exercised through
FastAPI's TestClient with auth overridden, and service calls are replaced
per test with ``monkeypatch``.
"""
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from app.core.auth import get_current_user
from app.main import app
from app.models.allocation import AggregateItem, AllocationRecord
from app.models.submission import DepartmentSubmission
from app.models.user import AuthenticatedUser

SUBMITTED_AT = datetime(2025, 10, 1, 9, 30, tzinfo=timezone.utc)
APPROVED_AT = datetime(2025, 10, 3, 14, 0, tzinfo=timezone.utc)


@pytest.fixture
def admin_user():
    return AuthenticatedUser(uid="admin-1", email="admin@example.com", role="admin")


@pytest.fixture
def hod_user():
    return AuthenticatedUser(uid="hod-1", email="hod@example.com", role="hod", department_id="dept-1")


@pytest.fixture
def client_as():
    """Build a TestClient authenticated as the given user."""

    def _client(user: AuthenticatedUser) -> TestClient:
        app.dependency_overrides[get_current_user] = lambda: user
        return TestClient(app)

    yield _client
    app.dependency_overrides.clear()


@pytest.fixture
def noop_audit(monkeypatch):
    """Capture audit writes made through the routers."""
    calls = []

    async def _log_action(*args, **kwargs):
        calls.append((args, kwargs))

    monkeypatch.setattr("app.routers.departments.log_action", _log_action)
    monkeypatch.setattr("app.routers.admin.log_action", _log_action)
    return calls


@pytest.fixture
def make_records():
    def _make(rows):
        return [AllocationRecord(subject_id=s, product=p, percentage=v) for s, p, v in rows]

    return _make


@pytest.fixture
def make_submission():
    def _make(**overrides) -> DepartmentSubmission:
        data = {
            "id": "sub-1",
            "dept_submission_ref": "D_SUB_001",
            "department_id": "dept-1",
            "department": "Tech",
            "period": "2025-Q4",
            "submitted_by": "hod-1",
            "status": "submitted",
            "items": [
                AggregateItem(product="Academy", percentage=70),
                AggregateItem(product="Intensive", percentage=30),
            ],
            "submitted_at": SUBMITTED_AT,
        }
        data.update(overrides)
        return DepartmentSubmission(**data)

    return _make
