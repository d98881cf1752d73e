"""Domain models for events, pools, reminders and delivery reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TriggerType(str, Enum):
    """Time-relative reminder points, each backed by one event flag."""

    T_MINUS_48H = "T_MINUS_48H"
    T_MINUS_24H = "T_MINUS_24H"
    T_MINUS_60M = "T_MINUS_60M"
    POST_EVENT = "POST_EVENT"

    @property
    def threshold_minutes(self) -> int | None:
        return _TRIGGER_THRESHOLDS.get(self)

    @property
    def is_pre_event(self) -> bool:
        return self is not TriggerType.POST_EVENT


_TRIGGER_THRESHOLDS = {
    TriggerType.T_MINUS_48H: 2880,
    TriggerType.T_MINUS_24H: 1440,
    TriggerType.T_MINUS_60M: 60,
}

# Widest window first; the sweep relies on this ordering.
PRE_EVENT_TRIGGERS: tuple[TriggerType, ...] = (
    TriggerType.T_MINUS_48H,
    TriggerType.T_MINUS_24H,
    TriggerType.T_MINUS_60M,
)


class RunType(str, Enum):
    MORNING = "morning"
    EVENING = "evening"
    ALL = "all"


class UnparsableTimePolicy(str, Enum):
    """Outcome used when an event's schedule cannot be parsed."""

    NEVER = "never"
    ALWAYS = "always"


class NotificationKind(str, Enum):
    POOL_ASSIGNED = "POOL_ASSIGNED"
    T_MINUS_48H = "T_MINUS_48H"
    T_MINUS_24H = "T_MINUS_24H"
    T_MINUS_60M = "T_MINUS_60M"
    POST_EVENT = "POST_EVENT"
    REGISTRATION_CONFIRMED = "REGISTRATION_CONFIRMED"

    @classmethod
    def for_trigger(cls, trigger: TriggerType) -> "NotificationKind":
        return cls(trigger.value)


class RecipientType(str, Enum):
    REGISTRANT = "registrant"
    FACILITATOR = "facilitator"


@dataclass(frozen=True)
class Registrant:
    registrant_id: int
    name: str
    mobile_number: str
    email: str | None = None
    registered_at: str | None = None


@dataclass(frozen=True)
class Facilitator:
    facilitator_id: int
    name: str
    mobile_number: str
    email: str | None = None


@dataclass(frozen=True)
class Event:
    event_id: int
    title: str
    event_date: str
    event_time: str | None
    max_capacity: int
    pool_capacity: int
    price: float = 0.0
    description: str | None = None
    category: str | None = None
    registration_deadline: str | None = None
    pools_assigned: bool = False
    reminder_48h_sent: bool = False
    reminder_24h_sent: bool = False
    reminder_60m_sent: bool = False
    post_event_sent: bool = False
    created_at: str | None = None

    def flag_for(self, trigger: TriggerType) -> bool:
        return {
            TriggerType.T_MINUS_48H: self.reminder_48h_sent,
            TriggerType.T_MINUS_24H: self.reminder_24h_sent,
            TriggerType.T_MINUS_60M: self.reminder_60m_sent,
            TriggerType.POST_EVENT: self.post_event_sent,
        }[trigger]


@dataclass(frozen=True)
class Pool:
    pool_id: int
    event_id: int
    name: str
    capacity: int
    facilitator_id: int | None
    meeting_link: str | None
    is_active: bool = True


@dataclass(frozen=True)
class PoolAttendee:
    attendee_id: int
    pool_id: int
    event_id: int
    registrant_id: int
    meeting_link: str | None
    notified: bool = False


@dataclass(frozen=True)
class PoolSpec:
    """Allocator input: one pool slot with its capacity."""

    name: str
    capacity: int
    facilitator: Facilitator | None = None


@dataclass(frozen=True)
class PoolAllocation:
    spec: PoolSpec
    registrants: list[Registrant]

    @property
    def occupancy(self) -> int:
        return len(self.registrants)


@dataclass(frozen=True)
class AllocationOutcome:
    pools: list[PoolAllocation]
    unplaced: list[Registrant]
    total_capacity: int
    over_capacity: bool

    @property
    def placed_count(self) -> int:
        return sum(pool.occupancy for pool in self.pools)


@dataclass(frozen=True)
class NotificationDraft:
    """Outbox row before insertion."""

    event_id: int
    kind: NotificationKind
    recipient_type: RecipientType
    recipient_id: int
    destination: str
    payload: dict[str, Any]
    sequence: int = 0


@dataclass(frozen=True)
class OutboxMessage:
    outbox_id: int
    event_id: int
    kind: NotificationKind
    recipient_type: RecipientType
    recipient_id: int
    destination: str
    sequence: int
    payload: dict[str, Any]
    status: str
    attempts: int
    last_error: str | None = None


@dataclass(frozen=True)
class DeliveryStatus:
    outbox_id: int
    kind: str
    recipient_type: str
    recipient_id: int
    status: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "outbox_id": self.outbox_id,
            "kind": self.kind,
            "recipient_type": self.recipient_type,
            "recipient_id": self.recipient_id,
            "status": self.status,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class AssignedPool:
    pool_id: int
    name: str
    capacity: int
    facilitator_id: int | None
    facilitator_name: str | None
    meeting_link: str | None
    registrant_ids: list[int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "name": self.name,
            "capacity": self.capacity,
            "facilitator_id": self.facilitator_id,
            "facilitator_name": self.facilitator_name,
            "meeting_link": self.meeting_link,
            "user_count": len(self.registrant_ids),
            "registrant_ids": list(self.registrant_ids),
        }


@dataclass(frozen=True)
class AssignmentResult:
    event_id: int
    pools: list[AssignedPool]
    notifications: list[DeliveryStatus] = field(default_factory=list)
    notification_error: str | None = None
    title: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "title": self.title,
            "pools": [pool.to_dict() for pool in self.pools],
            "notifications": [item.to_dict() for item in self.notifications],
            "notification_error": self.notification_error,
        }


@dataclass(frozen=True)
class EventRunResult:
    event_id: int
    title: str
    status: str
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "event_id": self.event_id,
            "title": self.title,
            "status": self.status,
        }
        if self.reason:
            payload["reason"] = self.reason
        if self.details:
            payload["details"] = self.details
        return payload


@dataclass(frozen=True)
class BatchReport:
    """Aggregate of per-event outcomes returned by scheduler triggers."""

    processed: int
    success: int
    failed: int
    skipped: int
    results: list[EventRunResult]
    run_type: str | None = None

    @classmethod
    def from_results(
        cls,
        results: list[EventRunResult],
        run_type: str | None = None,
    ) -> "BatchReport":
        return cls(
            processed=len(results),
            success=sum(1 for item in results if item.status == "success"),
            failed=sum(1 for item in results if item.status == "failed"),
            skipped=sum(1 for item in results if item.status == "skipped"),
            results=results,
            run_type=run_type,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "processed": self.processed,
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [item.to_dict() for item in self.results],
        }
        if self.run_type is not None:
            payload["run_type"] = self.run_type
        return payload
