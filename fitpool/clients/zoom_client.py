"""Zoom meeting provisioning adapter (server-to-server OAuth)."""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

import httpx

from fitpool.clients.base import (
    DeliveryError,
    MeetingDetails,
    MeetingProvisioningError,
    RetryPolicy,
    build_http_client,
    call_with_retry,
    send_request,
)
from fitpool.utils.logger import get_logger


logger = get_logger(__name__)

# Refresh the cached token this many seconds before Zoom expires it.
_TOKEN_EXPIRY_MARGIN_SECONDS = 60


class ZoomMeetingClient:
    """Creates one scheduled meeting per pool and registers its participants.

    Participants are keyed by email address; each registered participant
    receives a personal join URL. Addresses Zoom refuses to register fall
    back to the meeting's shared join URL.
    """

    def __init__(
        self,
        *,
        account_id: str,
        client_id: str,
        client_secret: str,
        host_user: str = "me",
        api_base_url: str = "https://api.zoom.us/v2",
        oauth_url: str = "https://zoom.us/oauth/token",
        timezone: str = "UTC",
        timeout_seconds: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not (account_id and client_id and client_secret):
            raise ValueError("Zoom account id, client id and client secret are required")
        self._account_id = account_id
        self._client_id = client_id
        self._client_secret = client_secret
        self._host_user = host_user
        self._api_base_url = api_base_url.rstrip("/")
        self._oauth_url = oauth_url
        self._timezone = timezone
        self._client = http_client or build_http_client(timeout_seconds)
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    def _token(self) -> str:
        if self._access_token and self._clock() < self._token_expires_at:
            return self._access_token

        response = call_with_retry(
            lambda: send_request(
                self._client,
                "POST",
                self._oauth_url,
                service="zoom-oauth",
                params={"grant_type": "account_credentials", "account_id": self._account_id},
                auth=(self._client_id, self._client_secret),
            ),
            self._retry_policy,
            description="zoom oauth token",
            sleep=self._sleep,
        )
        body = response.json()
        self._access_token = str(body["access_token"])
        expires_in = int(body.get("expires_in", 3600))
        self._token_expires_at = self._clock() + max(0, expires_in - _TOKEN_EXPIRY_MARGIN_SECONDS)
        return self._access_token

    def _api(self, method: str, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        def _call() -> httpx.Response:
            return send_request(
                self._client,
                method,
                f"{self._api_base_url}{path}",
                service="zoom",
                json=payload,
                headers={"Authorization": f"Bearer {self._token()}"},
            )

        response = call_with_retry(
            _call,
            self._retry_policy,
            description=f"zoom {method} {path}",
            sleep=self._sleep,
        )
        return response.json()

    def _register(self, meeting_id: str, email: str, first_name: str) -> str | None:
        try:
            body = self._api(
                "POST",
                f"/meetings/{meeting_id}/registrants",
                {"email": email, "first_name": first_name},
            )
        except DeliveryError as exc:
            logger.warning(
                "Zoom registrant rejected; using shared link | meeting_id=%s | email=%s | error=%s",
                meeting_id,
                email,
                exc,
            )
            return None
        return body.get("join_url")

    def create_meeting(
        self,
        title: str,
        start_time_iso: str,
        duration_minutes: int,
        participant_addresses: list[str],
        host_address: str | None,
    ) -> MeetingDetails:
        try:
            meeting = self._api(
                "POST",
                f"/users/{self._host_user}/meetings",
                {
                    "topic": title,
                    "type": 2,
                    "start_time": start_time_iso,
                    "duration": duration_minutes,
                    "timezone": self._timezone,
                    "settings": {
                        "approval_type": 0,
                        "registration_type": 1,
                        "join_before_host": False,
                        "waiting_room": True,
                        "registrants_email_notification": False,
                    },
                },
            )
        except (DeliveryError, KeyError, ValueError) as exc:
            raise MeetingProvisioningError(f"Zoom meeting creation failed: {exc}") from exc

        meeting_id = str(meeting.get("id", ""))
        join_url = meeting.get("join_url")
        if not meeting_id or not join_url:
            raise MeetingProvisioningError("Zoom response is missing the meeting id or join url")

        per_participant: dict[str, str] = {}
        addresses = list(participant_addresses)
        if host_address:
            addresses.append(host_address)
        for address in dict.fromkeys(addresses):
            personal = self._register(meeting_id, address, address.split("@")[0])
            if personal:
                per_participant[address] = personal

        logger.info(
            "Zoom meeting created | meeting_id=%s | title=%s | registrants=%s",
            meeting_id,
            title,
            len(per_participant),
        )
        return MeetingDetails(
            meeting_url=str(join_url),
            per_participant_urls=per_participant,
            meeting_id=meeting_id,
        )

    def close(self) -> None:
        self._client.close()
