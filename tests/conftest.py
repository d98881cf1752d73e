from __future__ import annotations

import itertools
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

import pytest

from fitpool.clients.base import (
    DeliveryReceipt,
    MeetingDetails,
    Message,
    PaymentOrder,
    PaymentRecord,
)
from fitpool.clients.invoice_client import ReportlabInvoiceRenderer
from fitpool.clients.razorpay_client import compute_signature
from fitpool.domain.models import Event
from fitpool.repository.data_repository import DataRepository
from fitpool.services.allocation_service import PoolAssignmentService
from fitpool.services.event_service import EventService
from fitpool.services.message_templates import MessageCatalog
from fitpool.services.notification_service import NotificationDispatchService
from fitpool.services.registration_service import RegistrationService
from fitpool.services.reminder_service import ReminderSweepService
from fitpool.utils.config import Settings, get_settings


# Asia/Kolkata is UTC+05:30, so 7:00 AM local on 2026-11-20 is 01:30 UTC.
EVENT_DATE = "2026-11-20"
EVENT_TIME = "7:00 AM - 8:00 AM"
EVENT_START = datetime(2026, 11, 20, 1, 30, tzinfo=timezone.utc)
EVENT_END = datetime(2026, 11, 20, 2, 30, tzinfo=timezone.utc)
DEADLINE = datetime(2026, 11, 18, 12, 0, tzinfo=timezone.utc)
REGISTRATION_NOW = datetime(2026, 11, 17, 12, 0, tzinfo=timezone.utc)
AFTER_DEADLINE = datetime(2026, 11, 18, 12, 30, tzinfo=timezone.utc)

PAYMENT_SECRET = "test-razorpay-secret"


def build_test_settings(tmp_path, filename: str = "fitpool_test.db", **overrides) -> Settings:
    get_settings.cache_clear()
    base = get_settings()
    values = {
        "database_path": tmp_path / filename,
        "timezone": "Asia/Kolkata",
        "admin_token": None,
        "scheduler_api_key": None,
        "admin_session_ttl_minutes": 720,
        "default_max_capacity": 100,
        "default_pool_capacity": 50,
        "max_pools_per_event": 52,
        "unparsable_time_policy": "never",
        "post_event_delay_minutes": 0,
        "default_session_minutes": 60,
        "delivery_retry_attempts": 1,
        "delivery_retry_backoff_seconds": 0.0,
        "outbox_max_attempts": 3,
        "outbox_claim_lease_seconds": 600,
        "assignment_lead_days": 1,
        "phone_country_code": "91",
        "whatsapp_access_token": None,
        "whatsapp_phone_number_id": None,
        "zoom_account_id": None,
        "zoom_client_id": None,
        "zoom_client_secret": None,
        "razorpay_key_id": None,
        "razorpay_key_secret": None,
        "smtp_host": None,
        "whatsapp_template_language": "en",
        "whatsapp_user_reminder_template": "user_reminder_2",
        "whatsapp_trainer_reminder_template": "trainer_reminder_2",
        "whatsapp_help_template": "help_troubleshooting",
        "invoice_currency": "INR",
    }
    values.update(overrides)
    return replace(base, **values)


class FakeMessagingClient:
    """Records every send; destinations listed in ``failures`` raise instead."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, Message]] = []
        self.failures: dict[str, Exception] = {}
        self.fail_all: Optional[Exception] = None

    def send_message(self, destination: str, message: Message) -> DeliveryReceipt:
        error = self.fail_all or self.failures.get(destination)
        if error is not None:
            raise error
        self.sent.append((destination, message))
        return DeliveryReceipt(destination=destination, message_id=f"wamid.{len(self.sent)}")

    def messages_to(self, destination: str) -> list[Message]:
        return [message for address, message in self.sent if address == destination]


class FakeMeetingClient:
    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.error: Optional[Exception] = None

    def create_meeting(
        self,
        title: str,
        start_time_iso: str,
        duration_minutes: int,
        participant_addresses: list[str],
        host_address: str | None,
    ) -> MeetingDetails:
        if self.error is not None:
            raise self.error
        number = len(self.calls) + 1
        self.calls.append(
            {
                "title": title,
                "start_time": start_time_iso,
                "duration": duration_minutes,
                "participants": list(participant_addresses),
                "host": host_address,
            }
        )
        url = f"https://meet.test/j/{number}"
        personal = {address: f"{url}?tk={address}" for address in participant_addresses}
        return MeetingDetails(meeting_url=url, per_participant_urls=personal, meeting_id=str(number))


class FakePaymentClient:
    def __init__(self, amount_paise: int = 49900, status: str = "captured") -> None:
        self.amount_paise = amount_paise
        self.status = status
        self.fetched: list[str] = []
        self.orders: list[dict] = []

    def create_order(self, amount_paise, *, currency, receipt, notes=None) -> PaymentOrder:
        self.orders.append(
            {"amount": amount_paise, "currency": currency, "receipt": receipt, "notes": notes}
        )
        return PaymentOrder(
            order_id=f"order_{len(self.orders)}",
            amount_paise=amount_paise,
            currency=currency,
            receipt=receipt,
        )

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return compute_signature(order_id, payment_id, PAYMENT_SECRET) == signature

    def fetch_payment_details(self, payment_id: str) -> PaymentRecord:
        self.fetched.append(payment_id)
        return PaymentRecord(
            payment_id=payment_id,
            order_id="order_test",
            amount_paise=self.amount_paise,
            currency="INR",
            status=self.status,
        )


class FakeEmailSender:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.error: Optional[Exception] = None

    def send(self, to, subject, body, attachment=None) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "body": body, "attachment": attachment})


@dataclass
class Harness:
    """Services wired against one temporary database with fake adapters."""

    settings: Settings
    repository: DataRepository
    messaging: FakeMessagingClient
    meetings: FakeMeetingClient
    payments: FakePaymentClient
    email: FakeEmailSender
    dispatcher: NotificationDispatchService
    events: EventService
    registrations: RegistrationService
    assignments: PoolAssignmentService
    reminders: ReminderSweepService
    _numbers: itertools.count = field(default_factory=lambda: itertools.count(1))

    def add_facilitator(self, name: str | None = None, email: str | None = None):
        number = next(self._numbers)
        return self.events.create_facilitator(
            name or f"Trainer {number}",
            f"91000{number:05d}",
            email,
        )

    def add_registrant(self, name: str | None = None, email: str | None = None):
        number = next(self._numbers)
        return self.registrations.upsert_registrant(
            name or f"Member {number}",
            f"92000{number:05d}",
            email,
        )

    def seed_event(
        self,
        *,
        registrants: int = 3,
        facilitators: int = 1,
        pool_capacity: int = 50,
        max_capacity: int = 100,
        price: float = 0.0,
        title: str = "Morning Yoga",
        event_date: str = EVENT_DATE,
        event_time: str = EVENT_TIME,
        deadline: datetime | None = DEADLINE,
        with_emails: bool = False,
    ) -> Event:
        roster = [self.add_facilitator() for _ in range(facilitators)]
        event = self.events.create_event(
            title=title,
            event_date=event_date,
            event_time=event_time,
            category="yoga",
            facilitator_ids=[item.facilitator_id for item in roster],
            price=price,
            max_capacity=max_capacity,
            pool_capacity=pool_capacity,
            registration_deadline=deadline,
        )
        for index in range(registrants):
            email = f"member{index}.{event.event_id}@example.com" if with_emails else None
            registrant = self.add_registrant(email=email)
            self.registrations.register_free(
                event.event_id,
                registrant.mobile_number,
                now=REGISTRATION_NOW,
            )
        return event

    def mark_assigned(self, event_id: int) -> None:
        with self.repository.transaction() as conn:
            self.repository.claim_pool_assignment(conn, event_id)


def build_harness(settings: Settings, *, with_meetings: bool = True) -> Harness:
    repository = DataRepository(settings)
    repository.initialize_database()
    messaging = FakeMessagingClient()
    meetings = FakeMeetingClient()
    payments = FakePaymentClient()
    email = FakeEmailSender()
    catalog = MessageCatalog(settings)
    dispatcher = NotificationDispatchService(
        repository=repository,
        messaging_client=messaging,
        settings=settings,
    )
    return Harness(
        settings=settings,
        repository=repository,
        messaging=messaging,
        meetings=meetings,
        payments=payments,
        email=email,
        dispatcher=dispatcher,
        events=EventService(repository=repository, settings=settings),
        registrations=RegistrationService(
            repository=repository,
            dispatcher=dispatcher,
            payment_client=payments,
            invoice_renderer=ReportlabInvoiceRenderer(),
            email_sender=email,
            settings=settings,
            catalog=catalog,
        ),
        assignments=PoolAssignmentService(
            repository=repository,
            meeting_client=meetings if with_meetings else None,
            dispatcher=dispatcher,
            settings=settings,
            catalog=catalog,
        ),
        reminders=ReminderSweepService(
            repository=repository,
            dispatcher=dispatcher,
            settings=settings,
            catalog=catalog,
        ),
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return build_test_settings(tmp_path)


@pytest.fixture
def harness(settings) -> Harness:
    return build_harness(settings)
