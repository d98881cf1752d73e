"""WhatsApp Cloud API messaging adapter."""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

import httpx

from fitpool.clients.base import (
    DeliveryError,
    DeliveryReceipt,
    Message,
    RetryPolicy,
    build_http_client,
    call_with_retry,
    send_request,
)
from fitpool.utils.logger import get_logger


logger = get_logger(__name__)


class WhatsAppCloudClient:
    """Sends text and template messages through the Graph API."""

    def __init__(
        self,
        *,
        access_token: str,
        phone_number_id: str,
        api_version: str = "v18.0",
        base_url: str = "https://graph.facebook.com",
        timeout_seconds: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not access_token or not phone_number_id:
            raise ValueError("WhatsApp access token and phone number id are required")
        self._access_token = access_token
        self._messages_url = f"/{api_version}/{phone_number_id}/messages"
        self._client = http_client or build_http_client(timeout_seconds, base_url=base_url)
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    @staticmethod
    def build_payload(destination: str, message: Message) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": destination,
        }
        if message.is_template:
            template: dict[str, Any] = {
                "name": message.template_name,
                "language": {"code": message.language},
            }
            if message.parameters:
                template["components"] = [
                    {
                        "type": "body",
                        "parameters": [
                            {"type": "text", "text": value} for value in message.parameters
                        ],
                    }
                ]
            payload["type"] = "template"
            payload["template"] = template
        else:
            payload["type"] = "text"
            payload["text"] = {"body": message.text}
        return payload

    def send_message(self, destination: str, message: Message) -> DeliveryReceipt:
        payload = self.build_payload(destination, message)

        def _post() -> httpx.Response:
            return send_request(
                self._client,
                "POST",
                self._messages_url,
                service="whatsapp",
                json=payload,
                headers={"Authorization": f"Bearer {self._access_token}"},
            )

        response = call_with_retry(
            _post,
            self._retry_policy,
            description=f"whatsapp send to {destination}",
            sleep=self._sleep,
        )
        try:
            body = response.json()
        except ValueError as exc:
            raise DeliveryError("whatsapp returned a non-JSON response") from exc
        messages = body.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        logger.info(
            "WhatsApp message accepted | to=%s | type=%s | message_id=%s",
            destination,
            payload["type"],
            message_id,
        )
        return DeliveryReceipt(destination=destination, message_id=message_id)

    def close(self) -> None:
        self._client.close()
