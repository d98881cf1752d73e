"""Razorpay order creation and payment verification adapter."""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Callable, Optional

import httpx

from fitpool.clients.base import (
    DeliveryError,
    PaymentGatewayError,
    PaymentOrder,
    PaymentRecord,
    RetryPolicy,
    build_http_client,
    call_with_retry,
    send_request,
)


def compute_signature(order_id: str, payment_id: str, key_secret: str) -> str:
    """HMAC-SHA256 of ``"order_id|payment_id"`` as Razorpay signs checkouts."""
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(key_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayClient:
    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout_seconds: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not key_id or not key_secret:
            raise ValueError("Razorpay key id and key secret are required")
        self._key_id = key_id
        self._key_secret = key_secret
        self._base_url = base_url.rstrip("/")
        self._client = http_client or build_http_client(timeout_seconds)
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def create_order(
        self,
        amount_paise: int,
        *,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> PaymentOrder:
        if amount_paise <= 0:
            raise ValueError("amount_paise must be > 0")
        # receipts longer than 40 characters are rejected by the orders API
        body = {
            "amount": amount_paise,
            "currency": currency,
            "receipt": receipt[:40],
            "notes": notes or {},
        }
        try:
            response = call_with_retry(
                lambda: send_request(
                    self._client,
                    "POST",
                    f"{self._base_url}/orders",
                    service="razorpay",
                    auth=(self._key_id, self._key_secret),
                    json=body,
                ),
                self._retry_policy,
                description=f"razorpay order {receipt}",
                sleep=self._sleep,
            )
            payload = response.json()
            return PaymentOrder(
                order_id=str(payload["id"]),
                amount_paise=int(payload["amount"]),
                currency=str(payload.get("currency", currency)),
                receipt=payload.get("receipt"),
                status=str(payload.get("status", "created")),
            )
        except (DeliveryError, KeyError, ValueError) as exc:
            raise PaymentGatewayError(f"Could not create order {receipt}: {exc}") from exc

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not (order_id and payment_id and signature):
            return False
        expected = compute_signature(order_id, payment_id, self._key_secret)
        return hmac.compare_digest(expected, signature)

    def fetch_payment_details(self, payment_id: str) -> PaymentRecord:
        try:
            response = call_with_retry(
                lambda: send_request(
                    self._client,
                    "GET",
                    f"{self._base_url}/payments/{payment_id}",
                    service="razorpay",
                    auth=(self._key_id, self._key_secret),
                ),
                self._retry_policy,
                description=f"razorpay fetch {payment_id}",
                sleep=self._sleep,
            )
            body = response.json()
            return PaymentRecord(
                payment_id=str(body["id"]),
                order_id=body.get("order_id"),
                amount_paise=int(body["amount"]),
                currency=str(body.get("currency", "INR")),
                status=str(body.get("status", "unknown")),
                method=body.get("method"),
                email=body.get("email"),
                contact=body.get("contact"),
            )
        except (DeliveryError, KeyError, ValueError) as exc:
            raise PaymentGatewayError(f"Could not fetch payment {payment_id}: {exc}") from exc

    def close(self) -> None:
        self._client.close()
