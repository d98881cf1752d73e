from __future__ import annotations

import pytest

from conftest import AFTER_DEADLINE, DEADLINE, PAYMENT_SECRET, REGISTRATION_NOW
from fitpool.clients.base import EmailDeliveryError, PaymentGatewayError
from fitpool.clients.razorpay_client import compute_signature
from fitpool.domain.models import NotificationKind
from fitpool.services.event_service import (
    DuplicateFacilitatorError,
    EventLockedError,
    EventNotFoundError,
    EventValidationError,
    UnknownFacilitatorError,
)
from fitpool.services.registration_service import (
    AlreadyRegisteredError,
    EventFullError,
    FreeEventOrderError,
    PaymentRequiredError,
    PaymentVerificationError,
    RegistrantNotFoundError,
    RegistrationClosedError,
    RegistrationService,
)
from fitpool.utils.phone import InvalidMobileNumberError


def _paid(harness, order_id: str = "order_1", payment_id: str = "pay_1", **kwargs):
    event = harness.seed_event(registrants=0, price=499.0)
    registrant = harness.add_registrant(email=kwargs.pop("email", None))
    return event, registrant, {
        "order_id": order_id,
        "payment_id": payment_id,
        "signature": compute_signature(order_id, payment_id, PAYMENT_SECRET),
        "amount_paise": 49900,
        "now": REGISTRATION_NOW,
        **kwargs,
    }


def test_upsert_normalizes_mobile_and_refreshes_details(harness) -> None:
    first = harness.registrations.upsert_registrant("Asha", "+91 98765-43210")
    second = harness.registrations.upsert_registrant("Asha K", "9876543210", "asha@example.com")

    assert first.mobile_number == "9876543210"
    assert first.registrant_id == second.registrant_id
    stored = harness.registrations.get_registrant("09876543210")
    assert (stored.name, stored.email) == ("Asha K", "asha@example.com")


def test_upsert_rejects_short_numbers(harness) -> None:
    with pytest.raises(InvalidMobileNumberError):
        harness.registrations.upsert_registrant("Asha", "12345")


def test_free_registration_sends_confirmation(harness) -> None:
    event = harness.seed_event(registrants=0)
    registrant = harness.add_registrant(name="Ravi")

    result = harness.registrations.register_free(
        event.event_id, registrant.mobile_number, now=REGISTRATION_NOW
    )

    assert result.registrant_id == registrant.registrant_id
    assert [item.status for item in result.notifications] == ["sent"]
    assert harness.repository.is_registered(registrant.registrant_id, event.event_id)
    text = harness.messaging.messages_to(f"91{registrant.mobile_number}")[0].text
    assert text.startswith("Hi Ravi, you're registered for *Morning Yoga*!")


def test_duplicate_registration_is_rejected(harness) -> None:
    event = harness.seed_event(registrants=0)
    registrant = harness.add_registrant()
    harness.registrations.register_free(event.event_id, registrant.mobile_number, now=REGISTRATION_NOW)

    with pytest.raises(AlreadyRegisteredError):
        harness.registrations.register_free(event.event_id, registrant.mobile_number, now=REGISTRATION_NOW)

    assert harness.repository.count_registrations(event.event_id) == 1


def test_full_event_rejects_registration(harness) -> None:
    event = harness.seed_event(registrants=1, max_capacity=1)
    late = harness.add_registrant()

    with pytest.raises(EventFullError):
        harness.registrations.register_free(event.event_id, late.mobile_number, now=REGISTRATION_NOW)


def test_registration_closes_at_deadline(harness) -> None:
    event = harness.seed_event(registrants=0)
    registrant = harness.add_registrant()

    with pytest.raises(RegistrationClosedError):
        harness.registrations.register_free(event.event_id, registrant.mobile_number, now=AFTER_DEADLINE)


def test_registration_closes_once_pools_are_assigned(harness) -> None:
    event = harness.seed_event(registrants=1, deadline=None)
    harness.assignments.assign_event_pools(event.event_id, now=AFTER_DEADLINE)
    latecomer = harness.add_registrant()

    with pytest.raises(RegistrationClosedError, match="already assigned"):
        harness.registrations.register_free(event.event_id, latecomer.mobile_number, now=AFTER_DEADLINE)


def test_paid_event_cannot_use_free_flow(harness) -> None:
    event = harness.seed_event(registrants=0, price=499.0)
    registrant = harness.add_registrant()
    with pytest.raises(PaymentRequiredError):
        harness.registrations.register_free(event.event_id, registrant.mobile_number, now=REGISTRATION_NOW)


def test_unknown_registrant_and_event(harness) -> None:
    event = harness.seed_event(registrants=0)
    with pytest.raises(RegistrantNotFoundError):
        harness.registrations.register_free(event.event_id, "9999999999", now=REGISTRATION_NOW)

    registrant = harness.add_registrant()
    with pytest.raises(EventNotFoundError):
        harness.registrations.register_free(404, registrant.mobile_number, now=REGISTRATION_NOW)


def test_paid_registration_records_payment_and_emails_invoice(harness) -> None:
    event, registrant, checkout = _paid(harness, email="payer@example.com")

    result = harness.registrations.confirm_paid_registration(
        event.event_id, registrant.mobile_number, **checkout
    )

    assert result.payment_id == "pay_1"
    assert result.invoice_emailed is True
    assert harness.payments.fetched == ["pay_1"]
    registrations = harness.repository.list_event_registrations(event.event_id)
    assert registrations[0].payment_id is not None

    email = harness.email.sent[0]
    assert email["to"] == "payer@example.com"
    filename, pdf_bytes = email["attachment"]
    assert filename == f"INV-{event.event_id}-pay_1.pdf"
    assert pdf_bytes.startswith(b"%PDF")

    confirmation = harness.messaging.messages_to(f"91{registrant.mobile_number}")[0].text
    assert "Amount paid: INR 499.00" in confirmation


def test_paid_registration_without_email_skips_invoice(harness) -> None:
    event, registrant, checkout = _paid(harness)
    result = harness.registrations.confirm_paid_registration(
        event.event_id, registrant.mobile_number, **checkout
    )
    assert result.invoice_emailed is False
    assert harness.email.sent == []


def test_invoice_failure_keeps_registration(harness) -> None:
    event, registrant, checkout = _paid(harness, email="payer@example.com")
    harness.email.error = EmailDeliveryError("smtp refused")

    result = harness.registrations.confirm_paid_registration(
        event.event_id, registrant.mobile_number, **checkout
    )

    assert result.invoice_emailed is False
    assert harness.repository.is_registered(registrant.registrant_id, event.event_id)


def test_bad_signature_is_rejected_before_gateway_lookup(harness) -> None:
    event, registrant, checkout = _paid(harness)
    checkout["signature"] = "0" * 64

    with pytest.raises(PaymentVerificationError, match="signature"):
        harness.registrations.confirm_paid_registration(
            event.event_id, registrant.mobile_number, **checkout
        )
    assert harness.payments.fetched == []


def test_client_amount_must_match_price(harness) -> None:
    event, registrant, checkout = _paid(harness)
    checkout["amount_paise"] = 100

    with pytest.raises(PaymentVerificationError, match="Amount mismatch"):
        harness.registrations.confirm_paid_registration(
            event.event_id, registrant.mobile_number, **checkout
        )


def test_unsettled_gateway_payment_is_rejected(harness) -> None:
    event, registrant, checkout = _paid(harness)
    harness.payments.status = "failed"

    with pytest.raises(PaymentVerificationError, match="is failed"):
        harness.registrations.confirm_paid_registration(
            event.event_id, registrant.mobile_number, **checkout
        )
    assert not harness.repository.is_registered(registrant.registrant_id, event.event_id)


def test_gateway_amount_mismatch_is_rejected(harness) -> None:
    event, registrant, checkout = _paid(harness)
    harness.payments.amount_paise = 100

    with pytest.raises(PaymentVerificationError, match="Gateway amount"):
        harness.registrations.confirm_paid_registration(
            event.event_id, registrant.mobile_number, **checkout
        )


def test_reused_payment_id_is_rejected(harness) -> None:
    event, registrant, checkout = _paid(harness)
    harness.registrations.confirm_paid_registration(event.event_id, registrant.mobile_number, **checkout)
    other = harness.add_registrant()

    with pytest.raises(AlreadyRegisteredError):
        harness.registrations.confirm_paid_registration(event.event_id, other.mobile_number, **checkout)


def test_missing_payment_client_raises_gateway_error(harness) -> None:
    event, registrant, checkout = _paid(harness)
    service = RegistrationService(repository=harness.repository, settings=harness.settings)

    with pytest.raises(PaymentGatewayError):
        service.confirm_paid_registration(event.event_id, registrant.mobile_number, **checkout)


def test_event_creation_validates_facilitators(harness) -> None:
    facilitator = harness.add_facilitator()
    with pytest.raises(DuplicateFacilitatorError):
        harness.events.create_facilitator("Copy", facilitator.mobile_number)

    with pytest.raises(UnknownFacilitatorError):
        harness.events.create_event(
            title="Stretch",
            event_date="2026-11-21",
            event_time="6 PM",
            category="mobility",
            facilitator_ids=[facilitator.facilitator_id, 999],
        )


def test_event_detail_lists_pools_and_registrations(harness) -> None:
    event = harness.seed_event(registrants=2)
    harness.assignments.assign_event_pools(event.event_id, now=AFTER_DEADLINE)

    detail = harness.events.get_event_detail(event.event_id, now=AFTER_DEADLINE).to_dict()

    assert detail["registration_count"] == 2
    assert detail["is_deadline_passed"] is True
    assert detail["is_past"] is False
    assert detail["event"]["registration_deadline"] == "2026-11-18T12:00:00+00:00"
    assert [len(pool["attendees"]) for pool in detail["pools"]] == [2]
    assert harness.repository.count_notifications(
        event.event_id, NotificationKind.REGISTRATION_CONFIRMED
    ) == 2


def test_payment_order_is_opened_for_event_price(harness) -> None:
    event = harness.seed_event(registrants=0, price=499.0)
    registrant = harness.add_registrant()

    order = harness.registrations.create_payment_order(
        event.event_id, registrant.mobile_number, 49900, now=REGISTRATION_NOW
    )

    assert (order.order_id, order.amount_paise, order.currency) == ("order_1", 49900, "INR")
    placed = harness.payments.orders[0]
    assert placed["receipt"].startswith(f"rcpt_{registrant.mobile_number}_")
    assert placed["notes"] == {
        "event_id": str(event.event_id),
        "registrant_id": str(registrant.registrant_id),
    }
    assert harness.repository.count_registrations(event.event_id) == 0


def test_payment_order_guards(harness) -> None:
    event = harness.seed_event(registrants=0, price=499.0)
    free = harness.seed_event(registrants=0, title="Free stretch")
    registrant = harness.add_registrant()
    mobile = registrant.mobile_number

    with pytest.raises(PaymentVerificationError, match="Amount mismatch"):
        harness.registrations.create_payment_order(event.event_id, mobile, 100, now=REGISTRATION_NOW)
    with pytest.raises(FreeEventOrderError):
        harness.registrations.create_payment_order(free.event_id, mobile, 0, now=REGISTRATION_NOW)
    with pytest.raises(EventNotFoundError):
        harness.registrations.create_payment_order(999, mobile, 49900, now=REGISTRATION_NOW)
    with pytest.raises(RegistrantNotFoundError):
        harness.registrations.create_payment_order(event.event_id, "9999999999", 49900, now=REGISTRATION_NOW)
    with pytest.raises(RegistrationClosedError):
        harness.registrations.create_payment_order(event.event_id, mobile, 49900, now=AFTER_DEADLINE)
    assert harness.payments.orders == []


def test_payment_order_rejects_registered_member(harness) -> None:
    event, registrant, checkout = _paid(harness)
    harness.registrations.confirm_paid_registration(event.event_id, registrant.mobile_number, **checkout)

    with pytest.raises(AlreadyRegisteredError):
        harness.registrations.create_payment_order(
            event.event_id, registrant.mobile_number, 49900, now=REGISTRATION_NOW
        )
    assert harness.payments.orders == []


def test_payment_order_without_gateway_raises(harness) -> None:
    event = harness.seed_event(registrants=0, price=499.0)
    registrant = harness.add_registrant()
    service = RegistrationService(repository=harness.repository, settings=harness.settings)

    with pytest.raises(PaymentGatewayError):
        service.create_payment_order(event.event_id, registrant.mobile_number, 49900)


def test_registrants_are_listed_newest_first(harness) -> None:
    first = harness.add_registrant(name="Asha")
    second = harness.add_registrant(name="Ravi")

    listed = harness.registrations.list_registrants()

    assert [item.registrant_id for item in listed] == [second.registrant_id, first.registrant_id]
    assert harness.registrations.get_registrant(first.mobile_number).name == "Asha"


def _event_fields(**overrides) -> dict:
    fields = {
        "title": "Evening Mobility",
        "event_date": "2026-11-22",
        "event_time": "6:00 PM - 7:00 PM",
        "category": "mobility",
        "price": 199.0,
        "max_capacity": 40,
        "pool_capacity": 20,
        "registration_deadline": DEADLINE,
    }
    fields.update(overrides)
    return fields


def test_update_event_rewrites_details_and_roster(harness) -> None:
    event = harness.seed_event(registrants=2)
    replacement = harness.add_facilitator(name="Meera")

    updated = harness.events.update_event(
        event.event_id,
        facilitator_ids=[replacement.facilitator_id],
        **_event_fields(),
    )

    assert (updated.title, updated.event_date, updated.price) == ("Evening Mobility", "2026-11-22", 199.0)
    assert (updated.max_capacity, updated.pool_capacity) == (40, 20)
    assert [item.name for item in harness.repository.list_event_facilitators(event.event_id)] == ["Meera"]


def test_update_event_keeps_roster_when_not_given(harness) -> None:
    event = harness.seed_event(registrants=0, facilitators=2)
    before = harness.repository.list_event_facilitators(event.event_id)

    harness.events.update_event(event.event_id, **_event_fields(title="Renamed"))

    assert harness.repository.list_event_facilitators(event.event_id) == before
    assert harness.events.get_event(event.event_id).title == "Renamed"


def test_update_event_validation(harness) -> None:
    event = harness.seed_event(registrants=3)

    with pytest.raises(EventValidationError, match="below the 3 existing registrations"):
        harness.events.update_event(event.event_id, **_event_fields(max_capacity=2))
    with pytest.raises(UnknownFacilitatorError):
        harness.events.update_event(event.event_id, facilitator_ids=[999], **_event_fields())
    with pytest.raises(EventNotFoundError):
        harness.events.update_event(999, **_event_fields())

    assert harness.events.get_event(event.event_id).title == "Morning Yoga"


def test_assigned_event_is_locked(harness) -> None:
    event = harness.seed_event(registrants=2)
    harness.assignments.assign_event_pools(event.event_id, now=AFTER_DEADLINE)
    newcomer = harness.add_facilitator()
    roster = harness.repository.list_event_facilitators(event.event_id)

    with pytest.raises(EventLockedError):
        harness.events.update_event(
            event.event_id,
            facilitator_ids=[newcomer.facilitator_id],
            **_event_fields(),
        )
    with pytest.raises(EventLockedError):
        harness.events.delete_event(event.event_id)

    assert harness.repository.list_event_facilitators(event.event_id) == roster
    assert harness.events.get_event(event.event_id).title == "Morning Yoga"
    assert harness.repository.list_event_pools(event.event_id)[0].meeting_link == "https://meet.test/j/1"


def test_delete_event_removes_unregistered_event(harness) -> None:
    empty = harness.seed_event(registrants=0)
    busy = harness.seed_event(registrants=1, title="Busy")

    harness.events.delete_event(empty.event_id)

    with pytest.raises(EventNotFoundError):
        harness.events.get_event(empty.event_id)
    assert harness.repository.list_event_facilitators(empty.event_id) == []
    with pytest.raises(EventLockedError, match="has registrations"):
        harness.events.delete_event(busy.event_id)
    with pytest.raises(EventNotFoundError):
        harness.events.delete_event(empty.event_id)
