"""Reminder sweep over events whose pools are assigned."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from fitpool.domain.constraints import ReminderConfig, validate_reminder_config
from fitpool.domain.models import (
    PRE_EVENT_TRIGGERS,
    BatchReport,
    DeliveryStatus,
    Event,
    EventRunResult,
    NotificationDraft,
    NotificationKind,
    RecipientType,
    RunType,
    TriggerType,
    UnparsableTimePolicy,
)
from fitpool.domain.time_windows import (
    matches_run_type,
    minutes_until,
    parse_event_window,
    should_fire,
)
from fitpool.repository.data_repository import DataRepository
from fitpool.services.message_templates import MessageCatalog
from fitpool.services.notification_service import NotificationDispatchService, build_drafts
from fitpool.utils.config import Settings, get_settings
from fitpool.utils.logger import get_logger
from fitpool.utils.phone import to_delivery_address


logger = get_logger(__name__)


def reminder_config_from_settings(settings: Settings) -> ReminderConfig:
    try:
        policy = UnparsableTimePolicy(settings.unparsable_time_policy.strip().lower())
    except ValueError as exc:
        raise ValueError("unparsable_time_policy must be 'never' or 'always'") from exc
    config = ReminderConfig(
        timezone=settings.timezone,
        unparsable_time_policy=policy,
        post_event_delay_minutes=settings.post_event_delay_minutes,
        default_session_minutes=settings.default_session_minutes,
    )
    validate_reminder_config(config)
    return config


def _record_fired(
    fired: dict[str, list[dict[str, Any]]],
    notification_errors: dict[str, str],
    trigger: TriggerType,
    outcome: tuple[list[DeliveryStatus], str | None],
) -> None:
    statuses, error = outcome
    fired[trigger.value] = [item.to_dict() for item in statuses]
    if error is not None:
        notification_errors[trigger.value] = error


class ReminderSweepService:
    """Evaluates each trigger per event and sends the due ones exactly once.

    A pre-event trigger is sent only when it is the nearest open window;
    wider windows that were never sent are closed as superseded, and every
    pre-event trigger left once the event has started is closed as expired.
    Closing sets the flag without sending anything.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        dispatcher: Optional[NotificationDispatchService] = None,
        settings: Optional[Settings] = None,
        catalog: Optional[MessageCatalog] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._dispatcher = dispatcher or NotificationDispatchService(
            repository=self._repository,
            settings=self._settings,
        )
        self._catalog = catalog or MessageCatalog(self._settings)
        self._config = reminder_config_from_settings(self._settings)
        self._tz = ZoneInfo(self._config.timezone)

    def run_reminder_sweep(
        self,
        run_type: RunType = RunType.ALL,
        *,
        now: datetime | None = None,
    ) -> BatchReport:
        current = now or datetime.now(timezone.utc)
        events = self._repository.list_events_needing_reminders()
        logger.info(
            "Reminder sweep started | run_type=%s | candidates=%s",
            run_type.value,
            len(events),
        )

        results: list[EventRunResult] = []
        for event in events:
            try:
                results.append(self._process_event(event, run_type, current))
            except Exception as exc:
                logger.exception("Reminder processing failed | event_id=%s", event.event_id)
                results.append(
                    EventRunResult(
                        event_id=event.event_id,
                        title=event.title,
                        status="failed",
                        reason=str(exc),
                    )
                )

        report = BatchReport.from_results(results, run_type=run_type.value)
        logger.info(
            "Reminder sweep finished | run_type=%s | processed=%s | success=%s | failed=%s | skipped=%s",
            run_type.value,
            report.processed,
            report.success,
            report.failed,
            report.skipped,
        )
        return report

    def _process_event(self, event: Event, run_type: RunType, now: datetime) -> EventRunResult:
        policy = self._config.unparsable_time_policy
        window = parse_event_window(
            event.event_date,
            event.event_time,
            self._tz,
            default_duration_minutes=self._config.default_session_minutes,
        )
        start = window.start if window else None
        end = window.end if window else None

        if not matches_run_type(start, run_type, unparsable_policy=policy):
            return EventRunResult(
                event_id=event.event_id,
                title=event.title,
                status="skipped",
                reason=f"outside {run_type.value} run window",
            )

        fired: dict[str, list[dict[str, Any]]] = {}
        closed: dict[str, str] = {}
        notification_errors: dict[str, str] = {}
        pending = [trigger for trigger in PRE_EVENT_TRIGGERS if not event.flag_for(trigger)]

        if start is not None and minutes_until(start, now) < 0:
            for trigger in pending:
                if self._close(event, trigger, "expired"):
                    closed[trigger.value] = "expired"
        else:
            eligible = [
                trigger
                for trigger in pending
                if should_fire(now, start, end, trigger, unparsable_policy=policy)
            ]
            if eligible:
                *superseded, nearest = eligible
                for trigger in superseded:
                    if self._close(event, trigger, "superseded"):
                        closed[trigger.value] = "superseded"
                outcome = self._fire(event, nearest)
                if outcome is not None:
                    _record_fired(fired, notification_errors, nearest, outcome)

        if should_fire(
            now,
            start,
            end,
            TriggerType.POST_EVENT,
            already_fired=event.post_event_sent,
            unparsable_policy=policy,
            post_event_delay=timedelta(minutes=self._config.post_event_delay_minutes),
        ):
            outcome = self._fire(event, TriggerType.POST_EVENT)
            if outcome is not None:
                _record_fired(fired, notification_errors, TriggerType.POST_EVENT, outcome)

        details: dict[str, Any] = {}
        if fired:
            details["fired"] = fired
        if closed:
            details["closed"] = closed
        if notification_errors:
            details["notification_errors"] = notification_errors
        return EventRunResult(
            event_id=event.event_id,
            title=event.title,
            status="success" if fired else "skipped",
            reason=None if fired else "no reminder due",
            details=details,
        )

    def _close(self, event: Event, trigger: TriggerType, reason: str) -> bool:
        with self._repository.transaction() as conn:
            claimed = self._repository.claim_reminder_flag(conn, event.event_id, trigger)
        if claimed:
            logger.info(
                "Reminder closed without sending | event_id=%s | trigger=%s | reason=%s",
                event.event_id,
                trigger.value,
                reason,
            )
        return claimed

    def _fire(
        self,
        event: Event,
        trigger: TriggerType,
    ) -> tuple[list[DeliveryStatus], str | None] | None:
        """Claim the flag and enqueue messages atomically, then deliver.

        Returns ``None`` when another sweep already claimed the trigger,
        otherwise the delivery statuses and the drain error, if any.
        """
        drafts = self._reminder_drafts(event, trigger)
        with self._repository.transaction() as conn:
            if not self._repository.claim_reminder_flag(conn, event.event_id, trigger):
                return None
            self._repository.enqueue_notifications(conn, drafts)

        logger.info(
            "Reminder fired | event_id=%s | trigger=%s | messages=%s",
            event.event_id,
            trigger.value,
            len(drafts),
        )
        try:
            statuses = self._dispatcher.drain(
                event_id=event.event_id,
                kinds=[NotificationKind.for_trigger(trigger)],
            )
        except Exception as exc:  # outbox rows stay pending for the next drain
            logger.exception(
                "Reminder notification drain failed | event_id=%s | trigger=%s",
                event.event_id,
                trigger.value,
            )
            return [], str(exc)
        return statuses, None

    def _reminder_drafts(self, event: Event, trigger: TriggerType) -> list[NotificationDraft]:
        kind = NotificationKind.for_trigger(trigger)
        country_code = self._settings.phone_country_code
        pools = self._repository.list_event_pools(event.event_id)
        fallback_link = next((pool.meeting_link for pool in pools if pool.meeting_link), None)
        registrant_links = {
            item.registrant_id: item.meeting_link
            for item in self._repository.list_pool_attendees(event.event_id)
        }
        facilitator_links = {
            pool.facilitator_id: pool.meeting_link
            for pool in pools
            if pool.facilitator_id is not None
        }

        drafts: list[NotificationDraft] = []
        for registrant in self._repository.list_event_registrants(event.event_id):
            drafts.extend(
                build_drafts(
                    event_id=event.event_id,
                    kind=kind,
                    recipient_type=RecipientType.REGISTRANT,
                    recipient_id=registrant.registrant_id,
                    destination=to_delivery_address(registrant.mobile_number, country_code),
                    messages=self._catalog.reminder_for_registrant(
                        trigger,
                        event=event,
                        registrant_name=registrant.name,
                        meeting_link=registrant_links.get(registrant.registrant_id) or fallback_link,
                    ),
                )
            )
        for facilitator in self._repository.list_event_facilitators(event.event_id):
            drafts.extend(
                build_drafts(
                    event_id=event.event_id,
                    kind=kind,
                    recipient_type=RecipientType.FACILITATOR,
                    recipient_id=facilitator.facilitator_id,
                    destination=to_delivery_address(facilitator.mobile_number, country_code),
                    messages=self._catalog.reminder_for_facilitator(
                        trigger,
                        event=event,
                        facilitator_name=facilitator.name,
                        meeting_link=facilitator_links.get(facilitator.facilitator_id)
                        or fallback_link,
                    ),
                )
            )
        return drafts
