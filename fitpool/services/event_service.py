"""Event and facilitator administration."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence
from zoneinfo import ZoneInfo

from fitpool.domain.models import Event, Facilitator
from fitpool.domain.time_windows import parse_event_date, parse_event_window, parse_instant
from fitpool.repository.data_repository import DataRepository, to_utc_iso
from fitpool.utils.config import Settings, get_settings
from fitpool.utils.logger import get_logger
from fitpool.utils.phone import normalize_mobile_number


logger = get_logger(__name__)


class EventServiceError(Exception):
    """Base error for event administration."""


class EventNotFoundError(EventServiceError):
    """Raised when an event id does not exist."""


class EventValidationError(EventServiceError):
    """Raised when event or facilitator input is invalid."""


class UnknownFacilitatorError(EventValidationError):
    """Raised when an event references a facilitator that does not exist."""


class DuplicateFacilitatorError(EventServiceError):
    """Raised when a facilitator with the same mobile number already exists."""


class EventLockedError(EventServiceError):
    """Raised when an event can no longer be edited or deleted."""


@dataclass(frozen=True)
class EventDetail:
    event: Event
    facilitators: list[Facilitator]
    pools: list[dict[str, Any]]
    registrations: list[dict[str, Any]]
    is_past: bool
    is_deadline_passed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": event_to_dict(self.event),
            "facilitators": [
                {
                    "facilitator_id": item.facilitator_id,
                    "name": item.name,
                    "mobile_number": item.mobile_number,
                    "email": item.email,
                }
                for item in self.facilitators
            ],
            "pools": self.pools,
            "registrations": self.registrations,
            "registration_count": len(self.registrations),
            "is_past": self.is_past,
            "is_deadline_passed": self.is_deadline_passed,
        }


def event_to_dict(event: Event) -> dict[str, Any]:
    return {
        "event_id": event.event_id,
        "title": event.title,
        "description": event.description,
        "category": event.category,
        "event_date": event.event_date,
        "event_time": event.event_time,
        "price": event.price,
        "max_capacity": event.max_capacity,
        "pool_capacity": event.pool_capacity,
        "registration_deadline": event.registration_deadline,
        "pools_assigned": event.pools_assigned,
        "reminder_48h_sent": event.reminder_48h_sent,
        "reminder_24h_sent": event.reminder_24h_sent,
        "reminder_60m_sent": event.reminder_60m_sent,
        "post_event_sent": event.post_event_sent,
    }


class EventService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._tz = ZoneInfo(self._settings.timezone)

    def create_facilitator(
        self,
        name: str,
        mobile_number: str,
        email: str | None = None,
    ) -> Facilitator:
        clean_name = (name or "").strip()
        if not clean_name:
            raise EventValidationError("Facilitator name is required")
        mobile = normalize_mobile_number(mobile_number)
        if self._repository.get_facilitator_by_mobile(mobile) is not None:
            raise DuplicateFacilitatorError(
                f"A facilitator with mobile number {mobile} already exists"
            )
        try:
            facilitator_id = self._repository.create_facilitator(clean_name, mobile, email)
        except sqlite3.IntegrityError as exc:
            raise DuplicateFacilitatorError(
                f"A facilitator with mobile number {mobile} already exists"
            ) from exc
        logger.info("Facilitator created | facilitator_id=%s | mobile=%s", facilitator_id, mobile)
        return Facilitator(
            facilitator_id=facilitator_id,
            name=clean_name,
            mobile_number=mobile,
            email=email,
        )

    def list_facilitators(self) -> list[Facilitator]:
        return self._repository.list_facilitators()

    def _normalize_deadline(self, value: datetime | str | None) -> str | None:
        """Store deadlines as UTC; naive input is read in the service timezone."""
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
            except ValueError as exc:
                raise EventValidationError(
                    "registration_deadline must be an ISO-8601 datetime"
                ) from exc
        if value.tzinfo is None:
            value = value.replace(tzinfo=self._tz)
        return to_utc_iso(value)

    def _prepare_event_fields(
        self,
        *,
        title: str,
        event_date: str,
        event_time: str,
        category: str,
        facilitator_ids: Sequence[int],
        description: str | None,
        price: float,
        max_capacity: int | None,
        pool_capacity: int | None,
        registration_deadline: datetime | str | None,
    ) -> tuple[dict[str, Any], list[int]]:
        if not (title or "").strip():
            raise EventValidationError("title is required")
        if parse_event_date(event_date) is None:
            raise EventValidationError("event_date must follow YYYY-MM-DD format")
        if not (event_time or "").strip():
            raise EventValidationError("event_time is required")
        if not (category or "").strip():
            raise EventValidationError("category is required")
        if not facilitator_ids:
            raise EventValidationError("At least one facilitator is required")
        if price < 0:
            raise EventValidationError("price must be >= 0")

        resolved_max = self._settings.default_max_capacity if max_capacity is None else max_capacity
        resolved_pool = (
            self._settings.default_pool_capacity if pool_capacity is None else pool_capacity
        )
        if resolved_max <= 0 or resolved_pool <= 0:
            raise EventValidationError("max_capacity and pool_capacity must be > 0")

        unique_ids = list(dict.fromkeys(facilitator_ids))
        known = {item.facilitator_id for item in self._repository.list_facilitators_by_ids(unique_ids)}
        missing = [item for item in unique_ids if item not in known]
        if missing:
            raise UnknownFacilitatorError(f"Unknown facilitator ids: {missing}")

        if parse_event_window(event_date, event_time, self._tz) is None:
            logger.warning(
                "Event time is not parseable; reminders will follow the fallback policy | "
                "title=%s | event_time=%s",
                title,
                event_time,
            )

        fields = {
            "title": title.strip(),
            "event_date": event_date[:10],
            "event_time": event_time.strip(),
            "max_capacity": resolved_max,
            "pool_capacity": resolved_pool,
            "price": float(price),
            "description": description,
            "category": category.strip(),
            "registration_deadline": self._normalize_deadline(registration_deadline),
        }
        return fields, unique_ids

    def create_event(
        self,
        *,
        title: str,
        event_date: str,
        event_time: str,
        category: str,
        facilitator_ids: Sequence[int],
        description: str | None = None,
        price: float = 0.0,
        max_capacity: int | None = None,
        pool_capacity: int | None = None,
        registration_deadline: datetime | str | None = None,
    ) -> Event:
        fields, unique_ids = self._prepare_event_fields(
            title=title,
            event_date=event_date,
            event_time=event_time,
            category=category,
            facilitator_ids=facilitator_ids,
            description=description,
            price=price,
            max_capacity=max_capacity,
            pool_capacity=pool_capacity,
            registration_deadline=registration_deadline,
        )
        event_id = self._repository.create_event(**fields, facilitator_ids=unique_ids)
        logger.info(
            "Event created | event_id=%s | date=%s | facilitators=%s",
            event_id,
            event_date,
            len(unique_ids),
        )
        return self.get_event(event_id)

    def update_event(
        self,
        event_id: int,
        *,
        title: str,
        event_date: str,
        event_time: str,
        category: str,
        description: str | None = None,
        price: float = 0.0,
        max_capacity: int | None = None,
        pool_capacity: int | None = None,
        registration_deadline: datetime | str | None = None,
        facilitator_ids: Sequence[int] | None = None,
    ) -> Event:
        """Replace an event's details and, when given, its facilitator roster.

        Events whose pools are assigned are locked: their links, rosters and
        reminder windows are already fixed.
        """
        existing = self.get_event(event_id)
        if existing.pools_assigned:
            raise EventLockedError(f"Pools are already assigned for event {event_id}")
        roster = (
            facilitator_ids
            if facilitator_ids is not None
            else [item.facilitator_id for item in self._repository.list_event_facilitators(event_id)]
        )
        fields, unique_ids = self._prepare_event_fields(
            title=title,
            event_date=event_date,
            event_time=event_time,
            category=category,
            facilitator_ids=roster,
            description=description,
            price=price,
            max_capacity=max_capacity,
            pool_capacity=pool_capacity,
            registration_deadline=registration_deadline,
        )

        with self._repository.transaction() as conn:
            registered = self._repository.count_registrations_in(conn, event_id)
            if fields["max_capacity"] < registered:
                raise EventValidationError(
                    f"max_capacity {fields['max_capacity']} is below the {registered} existing registrations"
                )
            if not self._repository.update_event(conn, event_id, **fields):
                raise EventLockedError(f"Pools are already assigned for event {event_id}")
            if facilitator_ids is not None:
                self._repository.replace_event_facilitators(conn, event_id, unique_ids)

        logger.info(
            "Event updated | event_id=%s | date=%s | facilitators_replaced=%s",
            event_id,
            fields["event_date"],
            facilitator_ids is not None,
        )
        return self.get_event(event_id)

    def delete_event(self, event_id: int) -> None:
        self.get_event(event_id)
        with self._repository.transaction() as conn:
            current = self._repository.get_event_in(conn, event_id)
            if current is None:
                raise EventNotFoundError(f"Event {event_id} not found")
            if current.pools_assigned:
                raise EventLockedError(f"Pools are already assigned for event {event_id}")
            if self._repository.count_registrations_in(conn, event_id) > 0:
                raise EventLockedError(f"Event {event_id} has registrations and cannot be deleted")
            self._repository.delete_event(conn, event_id)
        logger.info("Event deleted | event_id=%s", event_id)

    def get_event(self, event_id: int) -> Event:
        event = self._repository.get_event(event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        return event

    def list_events(
        self,
        upcoming_only: bool = False,
        *,
        now: datetime | None = None,
    ) -> list[Event]:
        if not upcoming_only:
            return self._repository.list_events()
        current = now or datetime.now(timezone.utc)
        return self._repository.list_events(from_date=current.astimezone(self._tz).date().isoformat())

    def get_event_detail(self, event_id: int, *, now: datetime | None = None) -> EventDetail:
        event = self.get_event(event_id)
        current = now or datetime.now(timezone.utc)

        window = parse_event_window(
            event.event_date,
            event.event_time,
            self._tz,
            default_duration_minutes=self._settings.default_session_minutes,
        )
        if window is not None:
            is_past = window.end < current
        else:
            day = parse_event_date(event.event_date)
            is_past = day is not None and day < current.astimezone(self._tz).date()

        deadline = parse_instant(event.registration_deadline)
        is_deadline_passed = deadline is not None and deadline <= current

        registrations = self._repository.list_event_registrations(event_id)
        names = {item.registrant_id: item.name for item in registrations}
        attendees = self._repository.list_pool_attendees(event_id)
        pools = []
        for pool in self._repository.list_event_pools(event_id):
            members = [item for item in attendees if item.pool_id == pool.pool_id]
            pools.append(
                {
                    "pool_id": pool.pool_id,
                    "name": pool.name,
                    "capacity": pool.capacity,
                    "facilitator_id": pool.facilitator_id,
                    "meeting_link": pool.meeting_link,
                    "is_active": pool.is_active,
                    "attendees": [
                        {
                            "registrant_id": item.registrant_id,
                            "name": names.get(item.registrant_id),
                            "meeting_link": item.meeting_link,
                            "notified": item.notified,
                        }
                        for item in members
                    ],
                }
            )

        return EventDetail(
            event=event,
            facilitators=self._repository.list_event_facilitators(event_id),
            pools=pools,
            registrations=[
                {
                    "registrant_id": item.registrant_id,
                    "name": item.name,
                    "mobile_number": item.mobile_number,
                    "email": item.email,
                    "registered_at": item.registered_at,
                    "paid": item.payment_id is not None,
                }
                for item in registrations
            ],
            is_past=is_past,
            is_deadline_passed=is_deadline_passed,
        )
