"""Admin session and scheduler key authentication."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Optional

from fitpool.utils.config import Settings, get_settings
from fitpool.utils.logger import get_logger


logger = get_logger(__name__)


class AuthenticationError(Exception):
    """Base authentication failure."""


class AdminTokenNotConfiguredError(AuthenticationError):
    """Raised when ADMIN_TOKEN is missing."""


class InvalidAdminTokenError(AuthenticationError):
    """Raised for a wrong admin token or an unknown or expired session."""


class InvalidSchedulerKeyError(AuthenticationError):
    """Raised when a scheduler trigger presents a wrong or missing key."""


class AuthService:
    """
    Issues admin bearer sessions and checks scheduler keys.

    Admins log in with the static ADMIN_TOKEN and receive a random session
    bearer that expires after ``admin_session_ttl_minutes``. Several sessions
    may be live at once. Scheduler triggers skip the session step and present
    SCHEDULER_API_KEY directly.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._sessions: dict[str, datetime] = {}
        self._lock = Lock()

    @property
    def auth_enabled(self) -> bool:
        return bool(self._settings.admin_token)

    @property
    def scheduler_auth_enabled(self) -> bool:
        return bool(self._settings.scheduler_api_key)

    def login(self, provided_admin_token: str, *, now: datetime | None = None) -> str:
        expected = self._settings.admin_token
        if not expected:
            raise AdminTokenNotConfiguredError(
                "ADMIN_TOKEN is not configured. Set ADMIN_TOKEN in environment variables."
            )
        if not secrets.compare_digest(provided_admin_token, expected):
            logger.warning("Admin login rejected")
            raise InvalidAdminTokenError("Invalid admin token")

        current = now or datetime.now(timezone.utc)
        bearer = secrets.token_urlsafe(32)
        with self._lock:
            self._drop_expired(current)
            self._sessions[bearer] = current + timedelta(
                minutes=self._settings.admin_session_ttl_minutes
            )
            active = len(self._sessions)
        logger.info("Admin session opened | active_sessions=%s", active)
        return bearer

    def logout(self, bearer_token: str) -> None:
        with self._lock:
            self._sessions.pop(bearer_token, None)

    def validate_bearer_token(self, bearer_token: str, *, now: datetime | None = None) -> None:
        if not self.auth_enabled:
            return
        current = now or datetime.now(timezone.utc)
        with self._lock:
            self._drop_expired(current)
            known = any(
                secrets.compare_digest(bearer_token, candidate) for candidate in self._sessions
            )
        if not known:
            raise InvalidAdminTokenError("Invalid or expired bearer token. Login again.")

    def validate_scheduler_key(self, provided_key: str | None) -> None:
        expected = self._settings.scheduler_api_key
        if not expected:
            return
        if not provided_key or not secrets.compare_digest(provided_key, expected):
            raise InvalidSchedulerKeyError("Invalid or missing scheduler API key")

    def _drop_expired(self, current: datetime) -> None:
        expired = [token for token, expires_at in self._sessions.items() if expires_at <= current]
        for token in expired:
            del self._sessions[token]
