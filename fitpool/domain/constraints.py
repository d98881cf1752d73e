"""Domain-level validation rules for allocation, reminders and delivery."""

from __future__ import annotations

from dataclasses import dataclass
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fitpool.domain.models import UnparsableTimePolicy


@dataclass(frozen=True)
class AllocatorConfig:
    default_pool_capacity: int
    max_pools_per_event: int
    assignment_lead_days: int = 1


@dataclass(frozen=True)
class ReminderConfig:
    timezone: str
    unparsable_time_policy: UnparsableTimePolicy
    post_event_delay_minutes: int
    default_session_minutes: int


@dataclass(frozen=True)
class DeliveryConfig:
    http_timeout_seconds: float
    retry_attempts: int
    retry_backoff_seconds: float
    outbox_max_attempts: int
    outbox_claim_lease_seconds: int = 600


def validate_allocator_config(config: AllocatorConfig) -> None:
    if config.default_pool_capacity <= 0:
        raise ValueError("default_pool_capacity must be > 0")
    if config.max_pools_per_event <= 0:
        raise ValueError("max_pools_per_event must be > 0")
    if config.assignment_lead_days < 0:
        raise ValueError("assignment_lead_days must be >= 0")


def validate_reminder_config(config: ReminderConfig) -> None:
    try:
        ZoneInfo(config.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"timezone is not a known IANA zone: {config.timezone}") from exc
    if not isinstance(config.unparsable_time_policy, UnparsableTimePolicy):
        raise ValueError("unparsable_time_policy must be 'never' or 'always'")
    if config.post_event_delay_minutes < 0:
        raise ValueError("post_event_delay_minutes must be >= 0")
    if config.default_session_minutes <= 0:
        raise ValueError("default_session_minutes must be > 0")


def validate_delivery_config(config: DeliveryConfig) -> None:
    if config.http_timeout_seconds <= 0:
        raise ValueError("http_timeout_seconds must be > 0")
    if config.retry_attempts <= 0:
        raise ValueError("retry_attempts must be > 0")
    if config.retry_backoff_seconds < 0:
        raise ValueError("retry_backoff_seconds must be >= 0")
    if config.outbox_max_attempts <= 0:
        raise ValueError("outbox_max_attempts must be > 0")
    if config.outbox_claim_lease_seconds <= 0:
        raise ValueError("outbox_claim_lease_seconds must be > 0")
