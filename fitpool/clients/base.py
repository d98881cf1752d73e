"""Contracts and shared HTTP plumbing for external delivery adapters."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Protocol, TypeVar

import httpx

from fitpool.utils.logger import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


class DeliveryError(Exception):
    """Permanent delivery failure; retrying will not help."""


class TransientDeliveryError(DeliveryError):
    """Timeout, transport failure or 5xx/429 response."""


class MeetingProvisioningError(Exception):
    """Raised when a meeting link could not be created."""


class PaymentGatewayError(Exception):
    """Raised when the payment gateway cannot be reached or rejects a lookup."""


class EmailDeliveryError(Exception):
    """Raised when an email could not be handed to the SMTP server."""


@dataclass(frozen=True)
class Message:
    """Outgoing message: free text or a pre-approved template."""

    text: str | None = None
    template_name: str | None = None
    language: str = "en"
    parameters: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if (self.text is None) == (self.template_name is None):
            raise ValueError("Message needs exactly one of text or template_name")

    @classmethod
    def plain(cls, body: str) -> "Message":
        return cls(text=body)

    @classmethod
    def template(
        cls,
        name: str,
        parameters: list[str] | tuple[str, ...] = (),
        language: str = "en",
    ) -> "Message":
        return cls(template_name=name, language=language, parameters=tuple(parameters))

    @property
    def is_template(self) -> bool:
        return self.template_name is not None

    def to_payload(self) -> dict[str, Any]:
        if self.is_template:
            return {
                "type": "template",
                "name": self.template_name,
                "language": self.language,
                "parameters": list(self.parameters),
            }
        return {"type": "text", "text": self.text}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Message":
        if payload.get("type") == "template":
            return cls.template(
                str(payload["name"]),
                [str(item) for item in payload.get("parameters", [])],
                language=str(payload.get("language", "en")),
            )
        return cls.plain(str(payload["text"]))


@dataclass(frozen=True)
class DeliveryReceipt:
    destination: str
    message_id: str | None = None


@dataclass(frozen=True)
class MeetingDetails:
    meeting_url: str
    per_participant_urls: dict[str, str] = field(default_factory=dict)
    meeting_id: str | None = None

    def url_for(self, address: str) -> str:
        return self.per_participant_urls.get(address, self.meeting_url)


@dataclass(frozen=True)
class PaymentRecord:
    payment_id: str
    order_id: str | None
    amount_paise: int
    currency: str
    status: str
    method: str | None = None
    email: str | None = None
    contact: str | None = None


@dataclass(frozen=True)
class PaymentOrder:
    order_id: str
    amount_paise: int
    currency: str
    receipt: str | None = None
    status: str = "created"


@dataclass(frozen=True)
class InvoiceDocument:
    invoice_number: str
    issued_on: date
    company_name: str
    company_address: str
    customer_name: str
    customer_mobile: str
    customer_email: str | None
    event_title: str
    event_date: str
    event_time: str | None
    amount: float
    currency: str
    payment_id: str
    order_id: str


class MessagingClient(Protocol):
    def send_message(self, destination: str, message: Message) -> DeliveryReceipt:
        ...


class MeetingClient(Protocol):
    def create_meeting(
        self,
        title: str,
        start_time_iso: str,
        duration_minutes: int,
        participant_addresses: list[str],
        host_address: str | None,
    ) -> MeetingDetails:
        ...


class PaymentClient(Protocol):
    def create_order(
        self,
        amount_paise: int,
        *,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> PaymentOrder:
        ...

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        ...

    def fetch_payment_details(self, payment_id: str) -> PaymentRecord:
        ...


class InvoiceRenderer(Protocol):
    def render(self, document: InvoiceDocument) -> bytes:
        ...


class EmailSender(Protocol):
    def send(
        self,
        to: str,
        subject: str,
        body: str,
        attachment: tuple[str, bytes] | None = None,
    ) -> None:
        ...


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    backoff_seconds: float = 1.0


def build_http_client(timeout_seconds: float, base_url: str = "") -> httpx.Client:
    return httpx.Client(base_url=base_url, timeout=httpx.Timeout(timeout_seconds))


def send_request(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    service: str,
    **kwargs: Any,
) -> httpx.Response:
    """Issue one request and classify failures as transient or permanent."""
    try:
        response = client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientDeliveryError(f"{service} request timed out") from exc
    except httpx.TransportError as exc:
        raise TransientDeliveryError(f"{service} transport error: {exc}") from exc

    if response.status_code == 429 or response.status_code >= 500:
        raise TransientDeliveryError(
            f"{service} returned {response.status_code}: {response.text[:200]}"
        )
    if response.status_code >= 400:
        raise DeliveryError(f"{service} returned {response.status_code}: {response.text[:200]}")
    return response


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` retrying transient failures with linear backoff."""
    attempts = max(1, policy.attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except TransientDeliveryError as exc:
            if attempt == attempts:
                logger.error(
                    "Retries exhausted | operation=%s | attempts=%s | error=%s",
                    description,
                    attempts,
                    exc,
                )
                raise
            delay = policy.backoff_seconds * attempt
            logger.warning(
                "Transient failure, retrying | operation=%s | attempt=%s | delay=%.1fs | error=%s",
                description,
                attempt,
                delay,
                exc,
            )
            sleep(delay)
    raise AssertionError("unreachable")
