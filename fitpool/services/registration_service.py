"""Free and paid event registration."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from fitpool.clients.base import (
    EmailSender,
    InvoiceDocument,
    InvoiceRenderer,
    PaymentClient,
    PaymentGatewayError,
    PaymentOrder,
    PaymentRecord,
)
from fitpool.domain.models import (
    DeliveryStatus,
    Event,
    NotificationKind,
    RecipientType,
    Registrant,
)
from fitpool.domain.time_windows import parse_instant
from fitpool.repository.data_repository import DataRepository, to_utc_iso
from fitpool.services.event_service import EventNotFoundError
from fitpool.services.message_templates import MessageCatalog
from fitpool.services.notification_service import NotificationDispatchService, build_drafts
from fitpool.utils.config import Settings, get_settings
from fitpool.utils.logger import get_logger
from fitpool.utils.phone import normalize_mobile_number, to_delivery_address


logger = get_logger(__name__)

_SETTLED_PAYMENT_STATUSES = {"authorized", "captured"}


class RegistrationError(Exception):
    """Base error for registration flows."""


class RegistrantNotFoundError(RegistrationError):
    """Raised when no registrant exists for a mobile number."""


class RegistrationClosedError(RegistrationError):
    """Raised when the deadline passed or pools are already assigned."""


class EventFullError(RegistrationError):
    """Raised when the event reached its capacity ceiling."""


class AlreadyRegisteredError(RegistrationError):
    """Raised when the registrant (or payment) is already recorded."""


class PaymentRequiredError(RegistrationError):
    """Raised when a paid event is registered through the free flow."""


class PaymentVerificationError(RegistrationError):
    """Raised when a payment signature, amount or status does not check out."""


class FreeEventOrderError(RegistrationError):
    """Raised when a payment order is requested for a free event."""


@dataclass(frozen=True)
class RegistrationResult:
    registration_id: int
    event_id: int
    registrant_id: int
    payment_id: str | None = None
    notifications: list[DeliveryStatus] = field(default_factory=list)
    notification_error: str | None = None
    invoice_emailed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "registration_id": self.registration_id,
            "event_id": self.event_id,
            "registrant_id": self.registrant_id,
            "payment_id": self.payment_id,
            "notifications": [item.to_dict() for item in self.notifications],
            "notification_error": self.notification_error,
            "invoice_emailed": self.invoice_emailed,
        }


class RegistrationService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        dispatcher: Optional[NotificationDispatchService] = None,
        payment_client: Optional[PaymentClient] = None,
        invoice_renderer: Optional[InvoiceRenderer] = None,
        email_sender: Optional[EmailSender] = None,
        settings: Optional[Settings] = None,
        catalog: Optional[MessageCatalog] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._dispatcher = dispatcher or NotificationDispatchService(
            repository=self._repository,
            settings=self._settings,
        )
        self._payment_client = payment_client
        self._invoice_renderer = invoice_renderer
        self._email_sender = email_sender
        self._catalog = catalog or MessageCatalog(self._settings)

    def upsert_registrant(
        self,
        name: str,
        mobile_number: str,
        email: str | None = None,
    ) -> Registrant:
        clean_name = (name or "").strip()
        if not clean_name:
            raise RegistrationError("name is required")
        mobile = normalize_mobile_number(mobile_number)
        registrant_id = self._repository.upsert_registrant(clean_name, mobile, email)
        return Registrant(
            registrant_id=registrant_id,
            name=clean_name,
            mobile_number=mobile,
            email=email,
        )

    def get_registrant(self, mobile_number: str) -> Registrant:
        mobile = normalize_mobile_number(mobile_number)
        registrant = self._repository.get_registrant_by_mobile(mobile)
        if registrant is None:
            raise RegistrantNotFoundError(f"No registrant found for mobile number {mobile}")
        return registrant

    def list_registrants(self) -> list[Registrant]:
        return self._repository.list_registrants()

    def _load_event(self, event_id: int) -> Event:
        event = self._repository.get_event(event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        return event

    @staticmethod
    def _check_open(event: Event, now: datetime) -> None:
        if event.pools_assigned:
            raise RegistrationClosedError(f"Pools are already assigned for event {event.event_id}")
        deadline = parse_instant(event.registration_deadline)
        if deadline is not None and deadline <= now:
            raise RegistrationClosedError(f"Registration deadline has passed for event {event.event_id}")

    def _check_not_registered(self, registrant: Registrant, event: Event) -> None:
        if self._repository.is_registered(registrant.registrant_id, event.event_id):
            raise AlreadyRegisteredError(
                f"Registrant {registrant.registrant_id} is already registered for event {event.event_id}"
            )

    def _register(
        self,
        event: Event,
        registrant: Registrant,
        now: datetime,
        payment: PaymentRecord | None = None,
        order_id: str | None = None,
    ) -> int:
        amount = payment.amount_paise / 100 if payment else None
        drafts = build_drafts(
            event_id=event.event_id,
            kind=NotificationKind.REGISTRATION_CONFIRMED,
            recipient_type=RecipientType.REGISTRANT,
            recipient_id=registrant.registrant_id,
            destination=to_delivery_address(registrant.mobile_number, self._settings.phone_country_code),
            messages=self._catalog.registration_confirmed(
                event=event,
                registrant_name=registrant.name,
                amount=amount,
            ),
        )
        try:
            with self._repository.transaction() as conn:
                # Re-read under the write lock so capacity and closing checks are exact.
                current = self._repository.get_event_in(conn, event.event_id)
                if current is None:
                    raise EventNotFoundError(f"Event {event.event_id} not found")
                self._check_open(current, now)
                if self._repository.count_registrations_in(conn, event.event_id) >= current.max_capacity:
                    raise EventFullError(f"Event {event.event_id} is full")

                payment_row_id = None
                if payment is not None:
                    payment_row_id = self._repository.create_payment(
                        conn,
                        registrant_id=registrant.registrant_id,
                        event_id=event.event_id,
                        order_id=order_id or payment.order_id or "",
                        payment_id=payment.payment_id,
                        amount=payment.amount_paise / 100,
                        status=payment.status,
                    )
                registration_id = self._repository.create_registration(
                    conn,
                    registrant_id=registrant.registrant_id,
                    event_id=event.event_id,
                    registered_at=to_utc_iso(now),
                    payment_row_id=payment_row_id,
                )
                self._repository.enqueue_notifications(conn, drafts)
        except sqlite3.IntegrityError as exc:
            raise AlreadyRegisteredError(
                f"Registration or payment already recorded for event {event.event_id}"
            ) from exc

        logger.info(
            "Registration created | event_id=%s | registrant_id=%s | paid=%s",
            event.event_id,
            registrant.registrant_id,
            payment is not None,
        )
        return registration_id

    def _notify(self, event_id: int) -> tuple[list[DeliveryStatus], str | None]:
        try:
            return (
                self._dispatcher.drain(
                    event_id=event_id,
                    kinds=[NotificationKind.REGISTRATION_CONFIRMED],
                ),
                None,
            )
        except Exception as exc:  # outbox rows stay pending for the next drain
            logger.exception("Registration confirmation drain failed | event_id=%s", event_id)
            return [], str(exc)

    def register_free(
        self,
        event_id: int,
        mobile_number: str,
        *,
        now: datetime | None = None,
    ) -> RegistrationResult:
        current = now or datetime.now(timezone.utc)
        registrant = self.get_registrant(mobile_number)
        event = self._load_event(event_id)
        self._check_open(event, current)
        self._check_not_registered(registrant, event)
        if event.price > 0:
            raise PaymentRequiredError(f"Event {event_id} requires payment")

        registration_id = self._register(event, registrant, current)
        notifications, error = self._notify(event_id)
        return RegistrationResult(
            registration_id=registration_id,
            event_id=event_id,
            registrant_id=registrant.registrant_id,
            notifications=notifications,
            notification_error=error,
        )

    def create_payment_order(
        self,
        event_id: int,
        mobile_number: str,
        amount_paise: int,
        *,
        now: datetime | None = None,
    ) -> PaymentOrder:
        """Open a gateway order for a paid event the registrant can still join.

        The requested amount must equal the event price in paise; nothing is
        stored until the checkout is verified.
        """
        current = now or datetime.now(timezone.utc)
        if self._payment_client is None:
            raise PaymentGatewayError("Payment gateway is not configured")

        event = self._load_event(event_id)
        registrant = self.get_registrant(mobile_number)
        if event.price <= 0:
            raise FreeEventOrderError(f"Event {event_id} is free; register without payment")
        expected_paise = round(event.price * 100)
        if amount_paise != expected_paise:
            raise PaymentVerificationError(
                f"Amount mismatch: expected {expected_paise} paise, got {amount_paise}"
            )
        self._check_open(event, current)
        self._check_not_registered(registrant, event)
        if self._repository.count_registrations(event_id) >= event.max_capacity:
            raise EventFullError(f"Event {event_id} is full")

        order = self._payment_client.create_order(
            expected_paise,
            currency=self._settings.invoice_currency,
            receipt=f"rcpt_{registrant.mobile_number}_{int(current.timestamp())}",
            notes={"event_id": str(event_id), "registrant_id": str(registrant.registrant_id)},
        )
        logger.info(
            "Payment order created | event_id=%s | registrant_id=%s | order_id=%s | amount_paise=%s",
            event_id,
            registrant.registrant_id,
            order.order_id,
            order.amount_paise,
        )
        return order

    def confirm_paid_registration(
        self,
        event_id: int,
        mobile_number: str,
        *,
        order_id: str,
        payment_id: str,
        signature: str,
        amount_paise: int,
        now: datetime | None = None,
    ) -> RegistrationResult:
        """Verify a checkout and record the payment with its registration."""
        current = now or datetime.now(timezone.utc)
        if self._payment_client is None:
            raise PaymentGatewayError("Payment verification is not configured")

        if not self._payment_client.verify_signature(order_id, payment_id, signature):
            raise PaymentVerificationError("Invalid payment signature")

        registrant = self.get_registrant(mobile_number)
        event = self._load_event(event_id)
        expected_paise = round(event.price * 100)
        if amount_paise != expected_paise:
            raise PaymentVerificationError(
                f"Amount mismatch: expected {expected_paise} paise, got {amount_paise}"
            )
        self._check_open(event, current)
        self._check_not_registered(registrant, event)

        payment = self._payment_client.fetch_payment_details(payment_id)
        if payment.amount_paise != expected_paise:
            raise PaymentVerificationError(
                f"Gateway amount {payment.amount_paise} does not match expected {expected_paise}"
            )
        if payment.status not in _SETTLED_PAYMENT_STATUSES:
            raise PaymentVerificationError(f"Payment {payment_id} is {payment.status}")

        registration_id = self._register(event, registrant, current, payment, order_id=order_id)
        notifications, error = self._notify(event_id)
        invoice_emailed = self._send_invoice(event, registrant, payment, order_id, current)
        return RegistrationResult(
            registration_id=registration_id,
            event_id=event_id,
            registrant_id=registrant.registrant_id,
            payment_id=payment.payment_id,
            notifications=notifications,
            notification_error=error,
            invoice_emailed=invoice_emailed,
        )

    def _send_invoice(
        self,
        event: Event,
        registrant: Registrant,
        payment: PaymentRecord,
        order_id: str,
        now: datetime,
    ) -> bool:
        if not registrant.email:
            return False
        if self._invoice_renderer is None or self._email_sender is None:
            logger.info("Invoice email skipped; SMTP not configured | event_id=%s", event.event_id)
            return False

        document = InvoiceDocument(
            invoice_number=f"INV-{event.event_id}-{payment.payment_id}",
            issued_on=now.date(),
            company_name=self._settings.invoice_company_name,
            company_address=self._settings.invoice_company_address,
            customer_name=registrant.name,
            customer_mobile=registrant.mobile_number,
            customer_email=registrant.email,
            event_title=event.title,
            event_date=event.event_date,
            event_time=event.event_time,
            amount=payment.amount_paise / 100,
            currency=self._settings.invoice_currency,
            payment_id=payment.payment_id,
            order_id=order_id,
        )
        try:
            pdf_bytes = self._invoice_renderer.render(document)
            self._email_sender.send(
                registrant.email,
                f"Your invoice for {event.title}",
                f"Hi {registrant.name},\n\nThank you for registering for {event.title}. "
                "Your invoice is attached.",
                (f"{document.invoice_number}.pdf", pdf_bytes),
            )
        except Exception:  # invoice delivery never undoes a paid registration
            logger.exception(
                "Invoice email failed | event_id=%s | registrant_id=%s",
                event.event_id,
                registrant.registrant_id,
            )
            return False
        return True
