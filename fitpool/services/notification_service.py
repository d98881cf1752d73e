"""Notification outbox drain."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from fitpool.clients.base import DeliveryError, Message, MessagingClient, TransientDeliveryError
from fitpool.domain.constraints import DeliveryConfig, validate_delivery_config
from fitpool.domain.models import (
    DeliveryStatus,
    NotificationDraft,
    NotificationKind,
    OutboxMessage,
    RecipientType,
)
from fitpool.repository.data_repository import DataRepository, to_utc_iso
from fitpool.utils.config import Settings, get_settings
from fitpool.utils.logger import get_logger


logger = get_logger(__name__)


def build_drafts(
    *,
    event_id: int,
    kind: NotificationKind,
    recipient_type: RecipientType,
    recipient_id: int,
    destination: str,
    messages: Sequence[Message],
) -> list[NotificationDraft]:
    """One outbox draft per message; ``sequence`` keeps multi-part messages ordered."""
    return [
        NotificationDraft(
            event_id=event_id,
            kind=kind,
            recipient_type=recipient_type,
            recipient_id=recipient_id,
            destination=destination,
            payload=message.to_payload(),
            sequence=index,
        )
        for index, message in enumerate(messages)
    ]


class NotificationDispatchService:
    """Delivers pending outbox rows and records the outcome on each row.

    Delivery failures never propagate: a transient failure leaves the row
    pending until ``outbox_max_attempts`` is reached, a permanent failure
    marks it failed immediately.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        messaging_client: Optional[MessagingClient] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._messaging_client = messaging_client
        self._config = DeliveryConfig(
            http_timeout_seconds=self._settings.http_timeout_seconds,
            retry_attempts=self._settings.delivery_retry_attempts,
            retry_backoff_seconds=self._settings.delivery_retry_backoff_seconds,
            outbox_max_attempts=self._settings.outbox_max_attempts,
            outbox_claim_lease_seconds=self._settings.outbox_claim_lease_seconds,
        )
        validate_delivery_config(self._config)

    @property
    def messaging_enabled(self) -> bool:
        return self._messaging_client is not None

    def drain(
        self,
        *,
        event_id: int | None = None,
        kinds: Sequence[NotificationKind] | None = None,
        limit: int | None = None,
    ) -> list[DeliveryStatus]:
        messaging_client = self._messaging_client
        now = datetime.now(timezone.utc)
        lease_cutoff = to_utc_iso(now - timedelta(seconds=self._config.outbox_claim_lease_seconds))
        pending = self._repository.list_pending_notifications(
            event_id=event_id,
            kinds=kinds,
            limit=limit,
            lease_cutoff_iso=lease_cutoff if messaging_client is not None else None,
        )
        if not pending:
            return []
        if messaging_client is None:
            logger.warning(
                "Messaging client not configured; outbox left pending | event_id=%s | pending=%s",
                event_id,
                len(pending),
            )
            return [self._status(item, "pending", "messaging not configured") for item in pending]

        statuses: list[DeliveryStatus] = []
        for item in pending:
            claimed = self._repository.claim_notification(
                item.outbox_id,
                now_iso=to_utc_iso(datetime.now(timezone.utc)),
                lease_cutoff_iso=lease_cutoff,
            )
            if not claimed:
                logger.debug("Outbox row claimed by another drain | outbox_id=%s", item.outbox_id)
                continue
            statuses.append(self._deliver(messaging_client, item))
        logger.info(
            "Outbox drained | event_id=%s | sent=%s | pending=%s | failed=%s",
            event_id,
            sum(1 for item in statuses if item.status == "sent"),
            sum(1 for item in statuses if item.status == "pending"),
            sum(1 for item in statuses if item.status == "failed"),
        )
        return statuses

    def _deliver(self, messaging_client: MessagingClient, item: OutboxMessage) -> DeliveryStatus:
        try:
            message = Message.from_payload(item.payload)
            messaging_client.send_message(item.destination, message)
        except TransientDeliveryError as exc:
            return self._fail(item, str(exc), permanent=False)
        except DeliveryError as exc:
            return self._fail(item, str(exc), permanent=True)
        except (KeyError, ValueError) as exc:
            return self._fail(item, f"malformed outbox payload: {exc}", permanent=True)

        self._repository.mark_notification_sent(item.outbox_id)
        if item.kind is NotificationKind.POOL_ASSIGNED and item.recipient_type is RecipientType.REGISTRANT:
            self._repository.mark_attendee_notified(item.event_id, item.recipient_id)
        return self._status(item, "sent")

    def _fail(self, item: OutboxMessage, error: str, *, permanent: bool) -> DeliveryStatus:
        row_status = self._repository.record_notification_failure(
            item.outbox_id,
            error,
            self._config.outbox_max_attempts,
            permanent=permanent,
        )
        logger.warning(
            "Notification delivery failed | outbox_id=%s | kind=%s | recipient=%s:%s | status=%s | error=%s",
            item.outbox_id,
            item.kind.value,
            item.recipient_type.value,
            item.recipient_id,
            row_status,
            error,
        )
        return self._status(item, row_status.lower(), error)

    @staticmethod
    def _status(item: OutboxMessage, status: str, error: str | None = None) -> DeliveryStatus:
        return DeliveryStatus(
            outbox_id=item.outbox_id,
            kind=item.kind.value,
            recipient_type=item.recipient_type.value,
            recipient_id=item.recipient_id,
            status=status,
            error=error,
        )
