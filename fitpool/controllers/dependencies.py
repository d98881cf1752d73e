"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from fitpool.services.allocation_service import PoolAssignmentService
from fitpool.services.auth_service import (
    AdminTokenNotConfiguredError,
    AuthService,
    InvalidAdminTokenError,
    InvalidSchedulerKeyError,
)
from fitpool.services.event_service import EventService
from fitpool.services.notification_service import NotificationDispatchService
from fitpool.services.registration_service import RegistrationService
from fitpool.services.reminder_service import ReminderSweepService
from fitpool.utils.config import get_settings


bearer_scheme = HTTPBearer(auto_error=False)


def _state_service(request: Request, attribute: str, label: str) -> Any:
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_auth_service(request: Request) -> AuthService:
    service = getattr(request.app.state, "auth_service", None)
    if service is None:
        service = AuthService(settings=get_settings())
        request.app.state.auth_service = service
    return service


def get_pool_assignment_service(request: Request) -> PoolAssignmentService:
    return _state_service(request, "pool_assignment_service", "Pool assignment service")


def get_reminder_service(request: Request) -> ReminderSweepService:
    return _state_service(request, "reminder_service", "Reminder service")


def get_dispatch_service(request: Request) -> NotificationDispatchService:
    return _state_service(request, "dispatch_service", "Notification dispatch service")


def get_event_service(request: Request) -> EventService:
    return _state_service(request, "event_service", "Event service")


def get_registration_service(request: Request) -> RegistrationService:
    return _state_service(request, "registration_service", "Registration service")


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> None:
    if not auth_service.auth_enabled:
        return
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header with Bearer token is required",
        )
    try:
        auth_service.validate_bearer_token(credentials.credentials)
    except (AdminTokenNotConfiguredError, InvalidAdminTokenError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc


async def require_scheduler_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> None:
    """Scheduler triggers authenticate with the static SCHEDULER_API_KEY."""
    if not auth_service.scheduler_auth_enabled:
        return
    try:
        auth_service.validate_scheduler_key(credentials.credentials if credentials else None)
    except InvalidSchedulerKeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
