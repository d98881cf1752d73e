"""Capacity pool allocation and the pool assignment workflow."""

from __future__ import annotations

import math
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from fitpool.clients.base import MeetingClient, MeetingDetails, MeetingProvisioningError
from fitpool.domain.constraints import AllocatorConfig, validate_allocator_config
from fitpool.domain.models import (
    AllocationOutcome,
    AssignedPool,
    AssignmentResult,
    BatchReport,
    DeliveryStatus,
    Event,
    EventRunResult,
    Facilitator,
    NotificationDraft,
    NotificationKind,
    PoolAllocation,
    PoolSpec,
    RecipientType,
    Registrant,
)
from fitpool.domain.time_windows import parse_event_window, parse_instant
from fitpool.repository.data_repository import DataRepository, to_utc_iso
from fitpool.services.event_service import EventNotFoundError
from fitpool.services.message_templates import MessageCatalog
from fitpool.services.notification_service import NotificationDispatchService, build_drafts
from fitpool.utils.config import Settings, get_settings
from fitpool.utils.logger import get_logger
from fitpool.utils.phone import to_delivery_address


logger = get_logger(__name__)


class PoolAssignmentError(Exception):
    """Base error for the pool assignment workflow."""


class RegistrationStillOpenError(PoolAssignmentError):
    """Raised when the registration deadline has not passed yet."""


class PoolsAlreadyAssignedError(PoolAssignmentError):
    """Raised when the event's pools were already assigned."""


class NoRegistrantsError(PoolAssignmentError):
    """Raised when an event has nobody to allocate."""


class RegistrationsChangedError(PoolAssignmentError):
    """Raised when registrations changed between planning and commit."""


class AllocationConfigurationError(PoolAssignmentError):
    """Raised when pools cannot be built from the event configuration."""


class NoFacilitatorsError(AllocationConfigurationError):
    """Raised when the event has no facilitator roster."""


class InsufficientFacilitatorsError(AllocationConfigurationError):
    """Raised when there are fewer facilitators than required pools."""


class UnplaceableRegistrantsError(AllocationConfigurationError):
    """Raised when total pool capacity cannot hold every registrant."""


def pool_name(index: int) -> str:
    """0 -> ``Pool A``, 25 -> ``Pool Z``, 26 -> ``Pool AA``."""
    if index < 0:
        raise ValueError("pool index must be >= 0")
    letters = ""
    value = index + 1
    while value:
        value, remainder = divmod(value - 1, 26)
        letters = chr(65 + remainder) + letters
    return f"Pool {letters}"


def required_pool_count(registrant_count: int, pool_capacity: int) -> int:
    if pool_capacity <= 0:
        raise AllocationConfigurationError("pool_capacity must be > 0")
    return max(1, math.ceil(registrant_count / pool_capacity))


def allocate(
    registrants: Sequence[Registrant],
    pools: Sequence[PoolSpec],
) -> AllocationOutcome:
    """Partition ``registrants`` into ``pools`` with a two-pass proportional fill.

    Pass 1 gives each pool ``min(capacity, floor(capacity / total * n))`` of the
    next registrants in input order. Pass 2 sweeps the pools round-robin,
    handing one remaining registrant to each pool that still has room, until
    everyone is placed or every pool is full. Registrants that do not fit are
    returned in ``unplaced``; no pool ever exceeds its capacity.
    """
    if not pools:
        raise AllocationConfigurationError("At least one pool is required")
    for spec in pools:
        if spec.capacity <= 0:
            raise AllocationConfigurationError(f"{spec.name} capacity must be > 0")
    registrant_ids = [item.registrant_id for item in registrants]
    if len(set(registrant_ids)) != len(registrant_ids):
        raise AllocationConfigurationError("Registrants must not appear more than once")

    count = len(registrants)
    total_capacity = sum(spec.capacity for spec in pools)
    over_capacity = total_capacity < count
    if over_capacity:
        logger.warning(
            "Registrants exceed total pool capacity | registrants=%s | capacity=%s",
            count,
            total_capacity,
        )

    buckets: list[list[Registrant]] = [[] for _ in pools]
    cursor = 0
    for index, spec in enumerate(pools):
        share = min(spec.capacity, spec.capacity * count // total_capacity)
        buckets[index].extend(registrants[cursor:cursor + share])
        cursor += share

    remaining = deque(registrants[cursor:])
    while remaining:
        placed = False
        for index, spec in enumerate(pools):
            if not remaining:
                break
            if len(buckets[index]) < spec.capacity:
                buckets[index].append(remaining.popleft())
                placed = True
        if not placed:
            break

    return AllocationOutcome(
        pools=[PoolAllocation(spec=spec, registrants=bucket) for spec, bucket in zip(pools, buckets)],
        unplaced=list(remaining),
        total_capacity=total_capacity,
        over_capacity=over_capacity,
    )


class PoolAssignmentService:
    """Turns an event's registrations into persisted pools with meeting links."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        meeting_client: Optional[MeetingClient] = None,
        dispatcher: Optional[NotificationDispatchService] = None,
        settings: Optional[Settings] = None,
        catalog: Optional[MessageCatalog] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._meeting_client = meeting_client
        self._dispatcher = dispatcher or NotificationDispatchService(
            repository=self._repository,
            settings=self._settings,
        )
        self._catalog = catalog or MessageCatalog(self._settings)
        self._tz = ZoneInfo(self._settings.timezone)
        self._config = AllocatorConfig(
            default_pool_capacity=self._settings.default_pool_capacity,
            max_pools_per_event=self._settings.max_pools_per_event,
            assignment_lead_days=self._settings.assignment_lead_days,
        )
        validate_allocator_config(self._config)

    def _build_pool_specs(
        self,
        event: Event,
        registrant_count: int,
        roster: list[Facilitator],
    ) -> list[PoolSpec]:
        if not roster:
            raise NoFacilitatorsError(f"Event {event.event_id} has no facilitators assigned")
        pool_count = required_pool_count(registrant_count, event.pool_capacity)
        if pool_count > self._config.max_pools_per_event:
            raise AllocationConfigurationError(
                f"Event {event.event_id} needs {pool_count} pools, "
                f"above the limit of {self._config.max_pools_per_event}"
            )
        if len(roster) < pool_count:
            raise InsufficientFacilitatorsError(
                f"Not enough facilitators. Need {pool_count} pools but only have {len(roster)} facilitators"
            )
        return [
            PoolSpec(name=pool_name(index), capacity=event.pool_capacity, facilitator=roster[index])
            for index in range(pool_count)
        ]

    def _provision_meetings(
        self,
        event: Event,
        outcome: AllocationOutcome,
    ) -> list[MeetingDetails]:
        if self._meeting_client is None:
            raise MeetingProvisioningError("Meeting provisioning is not configured")

        window = parse_event_window(
            event.event_date,
            event.event_time,
            self._tz,
            default_duration_minutes=self._settings.default_session_minutes,
        )
        if window is None:
            raise MeetingProvisioningError(
                f"Event {event.event_id} time '{event.event_time}' cannot be scheduled"
            )
        start_time = window.start.strftime("%Y-%m-%dT%H:%M:%S")

        meetings = []
        for allocation in outcome.pools:
            facilitator = allocation.spec.facilitator
            meetings.append(
                self._meeting_client.create_meeting(
                    f"{event.title} - {allocation.spec.name}",
                    start_time,
                    window.duration_minutes,
                    [item.email for item in allocation.registrants if item.email],
                    facilitator.email if facilitator else None,
                )
            )
        return meetings

    def _notification_drafts(
        self,
        event: Event,
        allocation: PoolAllocation,
        meeting: MeetingDetails,
    ) -> list[NotificationDraft]:
        country_code = self._settings.phone_country_code
        facilitator = allocation.spec.facilitator
        drafts: list[NotificationDraft] = []
        for registrant in allocation.registrants:
            link = meeting.url_for(registrant.email) if registrant.email else meeting.meeting_url
            drafts.extend(
                build_drafts(
                    event_id=event.event_id,
                    kind=NotificationKind.POOL_ASSIGNED,
                    recipient_type=RecipientType.REGISTRANT,
                    recipient_id=registrant.registrant_id,
                    destination=to_delivery_address(registrant.mobile_number, country_code),
                    messages=self._catalog.pool_assigned_for_registrant(
                        event=event,
                        facilitator_name=facilitator.name if facilitator else None,
                        meeting_link=link,
                    ),
                )
            )
        if facilitator is not None:
            host_link = (
                meeting.url_for(facilitator.email) if facilitator.email else meeting.meeting_url
            )
            drafts.extend(
                build_drafts(
                    event_id=event.event_id,
                    kind=NotificationKind.POOL_ASSIGNED,
                    recipient_type=RecipientType.FACILITATOR,
                    recipient_id=facilitator.facilitator_id,
                    destination=to_delivery_address(facilitator.mobile_number, country_code),
                    messages=self._catalog.pool_assigned_for_facilitator(
                        event=event,
                        pool_name=allocation.spec.name,
                        attendee_count=allocation.occupancy,
                        meeting_link=host_link,
                    ),
                )
            )
        return drafts

    def _persist_assignment(
        self,
        event: Event,
        outcome: AllocationOutcome,
        meetings: list[MeetingDetails],
        registrant_count: int,
    ) -> list[AssignedPool]:
        """Flag, pools, attendees and outbox rows in one transaction."""
        assigned: list[AssignedPool] = []
        with self._repository.transaction() as conn:
            if not self._repository.claim_pool_assignment(conn, event.event_id):
                raise PoolsAlreadyAssignedError(
                    f"Pools already assigned for event {event.event_id}"
                )
            if self._repository.count_registrations_in(conn, event.event_id) != registrant_count:
                raise RegistrationsChangedError(
                    f"Registrations for event {event.event_id} changed during assignment; retry"
                )

            drafts: list[NotificationDraft] = []
            for allocation, meeting in zip(outcome.pools, meetings):
                facilitator = allocation.spec.facilitator
                pool_id = self._repository.insert_pool(
                    conn,
                    event_id=event.event_id,
                    name=allocation.spec.name,
                    capacity=allocation.spec.capacity,
                    facilitator_id=facilitator.facilitator_id if facilitator else None,
                    meeting_link=meeting.meeting_url,
                )
                self._repository.insert_pool_attendees(
                    conn,
                    [
                        (
                            pool_id,
                            event.event_id,
                            registrant.registrant_id,
                            meeting.url_for(registrant.email) if registrant.email else meeting.meeting_url,
                        )
                        for registrant in allocation.registrants
                    ],
                )
                drafts.extend(self._notification_drafts(event, allocation, meeting))
                assigned.append(
                    AssignedPool(
                        pool_id=pool_id,
                        name=allocation.spec.name,
                        capacity=allocation.spec.capacity,
                        facilitator_id=facilitator.facilitator_id if facilitator else None,
                        facilitator_name=facilitator.name if facilitator else None,
                        meeting_link=meeting.meeting_url,
                        registrant_ids=[item.registrant_id for item in allocation.registrants],
                    )
                )
            self._repository.enqueue_notifications(conn, drafts)
        return assigned

    def assign_event_pools(
        self,
        event_id: int,
        *,
        now: datetime | None = None,
    ) -> AssignmentResult:
        """Allocate, persist and notify pools for one event.

        Guards run in order: event exists, registration closed, not yet
        assigned, at least one registrant. Meeting links are provisioned
        before any write; pools, attendees, the completed flag and the
        outbox rows then commit in a single transaction.
        """
        current = now or datetime.now(timezone.utc)

        event = self._repository.get_event(event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found")

        deadline = parse_instant(event.registration_deadline)
        if event.registration_deadline and deadline is None:
            raise AllocationConfigurationError(
                f"Event {event_id} registration deadline is not a valid datetime"
            )
        if deadline is not None and deadline > current:
            raise RegistrationStillOpenError(
                f"Registration for event {event_id} is open until {to_utc_iso(deadline)}"
            )
        if event.pools_assigned:
            raise PoolsAlreadyAssignedError(f"Pools already assigned for event {event_id}")

        registrants = self._repository.list_event_registrants(event_id)
        if not registrants:
            raise NoRegistrantsError(f"No registered users found for event {event_id}")

        roster = self._repository.list_event_facilitators(event_id)
        specs = self._build_pool_specs(event, len(registrants), roster)
        outcome = allocate(registrants, specs)
        if outcome.unplaced:
            raise UnplaceableRegistrantsError(
                f"{len(outcome.unplaced)} registrants do not fit into {len(specs)} pools"
            )

        meetings = self._provision_meetings(event, outcome)

        try:
            assigned = self._persist_assignment(event, outcome, meetings, len(registrants))
        except (PoolsAlreadyAssignedError, RegistrationsChangedError):
            logger.warning(
                "Assignment rolled back after provisioning; meetings orphaned | event_id=%s | meeting_ids=%s",
                event_id,
                ",".join(item.meeting_id or item.meeting_url for item in meetings),
            )
            raise

        logger.info(
            "Pools assigned | event_id=%s | pools=%s | registrants=%s",
            event_id,
            len(assigned),
            outcome.placed_count,
        )

        notifications: list[DeliveryStatus] = []
        notification_error: str | None = None
        try:
            notifications = self._dispatcher.drain(
                event_id=event_id,
                kinds=[NotificationKind.POOL_ASSIGNED],
            )
        except Exception as exc:  # outbox rows stay pending for the next drain
            logger.exception("Post-assignment notification drain failed | event_id=%s", event_id)
            notification_error = str(exc)

        return AssignmentResult(
            event_id=event_id,
            pools=assigned,
            notifications=notifications,
            notification_error=notification_error,
            title=event.title,
        )

    def assign_due_events(self, *, now: datetime | None = None) -> BatchReport:
        """Assign pools for every unassigned event whose registration has closed.

        Events without a deadline are picked up only within
        ``assignment_lead_days`` of their date.
        """
        current = now or datetime.now(timezone.utc)
        local_today = current.astimezone(self._tz).date()
        horizon = local_today + timedelta(days=self._config.assignment_lead_days)
        events = self._repository.list_events_pending_assignment(
            to_utc_iso(current),
            local_today.isoformat(),
            horizon.isoformat(),
        )
        logger.info("Pool assignment batch started | candidates=%s", len(events))

        results: list[EventRunResult] = []
        for event in events:
            try:
                result = self.assign_event_pools(event.event_id, now=current)
            except (
                NoRegistrantsError,
                RegistrationStillOpenError,
                PoolsAlreadyAssignedError,
            ) as exc:
                results.append(
                    EventRunResult(
                        event_id=event.event_id,
                        title=event.title,
                        status="skipped",
                        reason=str(exc),
                    )
                )
            except Exception as exc:
                logger.exception("Pool assignment failed | event_id=%s", event.event_id)
                results.append(
                    EventRunResult(
                        event_id=event.event_id,
                        title=event.title,
                        status="failed",
                        reason=str(exc),
                    )
                )
            else:
                results.append(
                    EventRunResult(
                        event_id=event.event_id,
                        title=event.title,
                        status="success",
                        details=result.to_dict(),
                    )
                )

        report = BatchReport.from_results(results)
        logger.info(
            "Pool assignment batch finished | processed=%s | success=%s | failed=%s | skipped=%s",
            report.processed,
            report.success,
            report.failed,
            report.skipped,
        )
        return report
