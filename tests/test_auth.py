from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from app import ExternalClients, create_app
from conftest import build_test_settings
from fitpool.services.auth_service import (
    AdminTokenNotConfiguredError,
    AuthService,
    InvalidAdminTokenError,
    InvalidSchedulerKeyError,
)


NOW = datetime(2026, 11, 1, 9, 0, tzinfo=timezone.utc)


def _service(tmp_path, **overrides) -> AuthService:
    values = {"admin_token": "admin-secret", "admin_session_ttl_minutes": 30}
    values.update(overrides)
    return AuthService(settings=build_test_settings(tmp_path, **values))


def test_login_issues_independent_sessions(tmp_path) -> None:
    service = _service(tmp_path)

    first = service.login("admin-secret", now=NOW)
    second = service.login("admin-secret", now=NOW)

    assert first != second
    service.validate_bearer_token(first, now=NOW)
    service.validate_bearer_token(second, now=NOW)


def test_session_expires_after_ttl(tmp_path) -> None:
    service = _service(tmp_path)
    bearer = service.login("admin-secret", now=NOW)

    service.validate_bearer_token(bearer, now=NOW + timedelta(minutes=29))
    with pytest.raises(InvalidAdminTokenError, match="expired"):
        service.validate_bearer_token(bearer, now=NOW + timedelta(minutes=30))


def test_logout_revokes_only_that_session(tmp_path) -> None:
    service = _service(tmp_path)
    kept = service.login("admin-secret", now=NOW)
    dropped = service.login("admin-secret", now=NOW)

    service.logout(dropped)

    service.validate_bearer_token(kept, now=NOW)
    with pytest.raises(InvalidAdminTokenError):
        service.validate_bearer_token(dropped, now=NOW)


def test_login_errors(tmp_path) -> None:
    with pytest.raises(InvalidAdminTokenError):
        _service(tmp_path).login("wrong")
    with pytest.raises(AdminTokenNotConfiguredError):
        _service(tmp_path, admin_token=None).login("anything")


def test_auth_disabled_without_admin_token(tmp_path) -> None:
    service = _service(tmp_path, admin_token=None)
    assert service.auth_enabled is False
    service.validate_bearer_token("whatever")


def test_scheduler_key_checks(tmp_path) -> None:
    service = _service(tmp_path, scheduler_api_key="sched")

    service.validate_scheduler_key("sched")
    with pytest.raises(InvalidSchedulerKeyError):
        service.validate_scheduler_key(None)
    with pytest.raises(InvalidSchedulerKeyError):
        service.validate_scheduler_key("other")

    open_service = _service(tmp_path)
    assert open_service.scheduler_auth_enabled is False
    open_service.validate_scheduler_key(None)


def test_logout_endpoint_invalidates_bearer(tmp_path) -> None:
    settings = build_test_settings(tmp_path, "auth_api.db", admin_token="admin-secret")
    app = create_app(settings, ExternalClients())

    with TestClient(app) as client:
        bearer = client.post("/login", json={"admin_token": "admin-secret"}).json()["access_token"]
        headers = {"Authorization": f"Bearer {bearer}"}

        assert client.get("/facilitators", headers=headers).status_code == 200
        assert client.post("/logout", headers=headers).status_code == 204
        assert client.get("/facilitators", headers=headers).status_code == 401
