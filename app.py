"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It builds the external adapters from settings, wires all services,
registers routers, and initializes the schema on startup.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from fitpool.clients.base import (
    EmailSender,
    InvoiceRenderer,
    MeetingClient,
    MessagingClient,
    PaymentClient,
    RetryPolicy,
)
from fitpool.clients.invoice_client import ReportlabInvoiceRenderer, SmtpEmailSender
from fitpool.clients.razorpay_client import RazorpayClient
from fitpool.clients.whatsapp_client import WhatsAppCloudClient
from fitpool.clients.zoom_client import ZoomMeetingClient
from fitpool.controllers.event_controller import router as event_router
from fitpool.controllers.scheduler_controller import router as scheduler_router
from fitpool.repository.data_repository import DataRepository
from fitpool.services.allocation_service import PoolAssignmentService
from fitpool.services.auth_service import AuthService
from fitpool.services.event_service import EventService
from fitpool.services.message_templates import MessageCatalog
from fitpool.services.notification_service import NotificationDispatchService
from fitpool.services.registration_service import RegistrationService
from fitpool.services.reminder_service import ReminderSweepService
from fitpool.utils.config import Settings, get_settings
from fitpool.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class ExternalClients:
    """Adapters built from settings; ``None`` means the integration is not configured."""

    messaging: Optional[MessagingClient] = None
    meetings: Optional[MeetingClient] = None
    payments: Optional[PaymentClient] = None
    invoice_renderer: Optional[InvoiceRenderer] = None
    email_sender: Optional[EmailSender] = None


def build_clients(settings: Settings) -> ExternalClients:
    retry_policy = RetryPolicy(
        attempts=settings.delivery_retry_attempts,
        backoff_seconds=settings.delivery_retry_backoff_seconds,
    )

    messaging = None
    if settings.whatsapp_enabled:
        messaging = WhatsAppCloudClient(
            access_token=settings.whatsapp_access_token or "",
            phone_number_id=settings.whatsapp_phone_number_id or "",
            api_version=settings.whatsapp_api_version,
            base_url=settings.whatsapp_base_url,
            timeout_seconds=settings.http_timeout_seconds,
            retry_policy=retry_policy,
        )

    meetings = None
    if settings.zoom_enabled:
        meetings = ZoomMeetingClient(
            account_id=settings.zoom_account_id or "",
            client_id=settings.zoom_client_id or "",
            client_secret=settings.zoom_client_secret or "",
            host_user=settings.zoom_host_user,
            api_base_url=settings.zoom_api_base_url,
            oauth_url=settings.zoom_oauth_url,
            timezone=settings.timezone,
            timeout_seconds=settings.http_timeout_seconds,
            retry_policy=retry_policy,
        )

    payments = None
    if settings.razorpay_enabled:
        payments = RazorpayClient(
            key_id=settings.razorpay_key_id or "",
            key_secret=settings.razorpay_key_secret or "",
            base_url=settings.razorpay_base_url,
            timeout_seconds=settings.http_timeout_seconds,
            retry_policy=retry_policy,
        )

    invoice_renderer = None
    email_sender = None
    if settings.smtp_enabled:
        invoice_renderer = ReportlabInvoiceRenderer()
        email_sender = SmtpEmailSender(
            host=settings.smtp_host or "",
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            from_address=settings.email_from_address,
            timeout_seconds=settings.http_timeout_seconds,
        )

    logger.info(
        "External clients configured | whatsapp=%s | zoom=%s | razorpay=%s | smtp=%s",
        messaging is not None,
        meetings is not None,
        payments is not None,
        email_sender is not None,
    )
    return ExternalClients(
        messaging=messaging,
        meetings=meetings,
        payments=payments,
        invoice_renderer=invoice_renderer,
        email_sender=email_sender,
    )


def create_app(
    settings: Optional[Settings] = None,
    clients: Optional[ExternalClients] = None,
) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Instantiates all services with explicit dependency injection via app.state.
    No global singletons: every dependency is traceable from this function.
    """
    settings = settings or get_settings()
    clients = clients or build_clients(settings)

    # --- Repository (SQLite connection factory) ---
    repository = DataRepository(settings)

    # --- Services ---
    catalog = MessageCatalog(settings)
    dispatch_service = NotificationDispatchService(
        repository=repository,
        messaging_client=clients.messaging,
        settings=settings,
    )
    pool_assignment_service = PoolAssignmentService(
        repository=repository,
        meeting_client=clients.meetings,
        dispatcher=dispatch_service,
        settings=settings,
        catalog=catalog,
    )
    reminder_service = ReminderSweepService(
        repository=repository,
        dispatcher=dispatch_service,
        settings=settings,
        catalog=catalog,
    )
    registration_service = RegistrationService(
        repository=repository,
        dispatcher=dispatch_service,
        payment_client=clients.payments,
        invoice_renderer=clients.invoice_renderer,
        email_sender=clients.email_sender,
        settings=settings,
        catalog=catalog,
    )
    event_service = EventService(repository=repository, settings=settings)
    auth_service = AuthService(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(event_router)
    app.include_router(scheduler_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.settings = settings
    app.state.repository = repository
    app.state.dispatch_service = dispatch_service
    app.state.pool_assignment_service = pool_assignment_service
    app.state.reminder_service = reminder_service
    app.state.registration_service = registration_service
    app.state.event_service = event_service
    app.state.auth_service = auth_service

    return app


def _startup(app: FastAPI) -> None:
    """Idempotent startup sequence. Safe to re-run on server restarts."""
    repository: DataRepository = app.state.repository

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    logger.info("Startup complete: system ready")


# Module-level app object for uvicorn
app = create_app()
