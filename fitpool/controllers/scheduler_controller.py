"""Scheduler trigger endpoints for pool assignment, reminders and the outbox."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from fitpool.clients.base import MeetingProvisioningError
from fitpool.controllers.dependencies import (
    get_dispatch_service,
    get_pool_assignment_service,
    get_reminder_service,
    require_scheduler_key,
)
from fitpool.domain.models import BatchReport, EventRunResult, RunType
from fitpool.services.allocation_service import (
    AllocationConfigurationError,
    NoRegistrantsError,
    PoolAssignmentService,
    PoolsAlreadyAssignedError,
    RegistrationsChangedError,
    RegistrationStillOpenError,
)
from fitpool.services.event_service import EventNotFoundError
from fitpool.services.notification_service import NotificationDispatchService
from fitpool.services.reminder_service import ReminderSweepService
from fitpool.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["scheduler"], dependencies=[Depends(require_scheduler_key)])


class BatchReportResponse(BaseModel):
    processed: int = Field(ge=0)
    success: int = Field(ge=0)
    failed: int = Field(ge=0)
    skipped: int = Field(ge=0)
    results: list[dict[str, Any]]
    run_type: str | None = None


class UnifiedReportResponse(BatchReportResponse):
    assignment: BatchReportResponse
    reminders: BatchReportResponse


class DrainRequest(BaseModel):
    event_id: int | None = Field(default=None, gt=0)
    limit: int | None = Field(default=None, gt=0, le=1000)


@router.api_route(
    "/scheduler/assign-pools",
    methods=["GET", "POST"],
    response_model=BatchReportResponse,
    status_code=status.HTTP_200_OK,
)
def trigger_pool_assignment(
    service: PoolAssignmentService = Depends(get_pool_assignment_service),
) -> BatchReportResponse:
    """Assign pools for every event whose registration has closed."""
    try:
        return BatchReportResponse(**service.assign_due_events().to_dict())
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected pool assignment batch failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to run pool assignment",
        ) from exc


@router.api_route(
    "/scheduler/reminders",
    methods=["GET", "POST"],
    response_model=BatchReportResponse,
    status_code=status.HTTP_200_OK,
)
def trigger_reminders(
    run_type: RunType = Query(default=RunType.ALL),
    service: ReminderSweepService = Depends(get_reminder_service),
) -> BatchReportResponse:
    try:
        return BatchReportResponse(**service.run_reminder_sweep(run_type).to_dict())
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected reminder sweep failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to run reminder sweep",
        ) from exc


@router.api_route(
    "/scheduler/unified",
    methods=["GET", "POST"],
    response_model=UnifiedReportResponse,
    status_code=status.HTTP_200_OK,
)
def trigger_unified(
    run_type: RunType = Query(default=RunType.ALL),
    assignment_service: PoolAssignmentService = Depends(get_pool_assignment_service),
    reminder_service: ReminderSweepService = Depends(get_reminder_service),
) -> UnifiedReportResponse:
    """Assign due pools first so newly assigned events join the same reminder sweep."""
    try:
        assignment = assignment_service.assign_due_events()
        reminders = reminder_service.run_reminder_sweep(run_type)
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected unified scheduler failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to run scheduler",
        ) from exc

    combined = BatchReport.from_results(
        assignment.results + reminders.results,
        run_type=run_type.value,
    )
    return UnifiedReportResponse(
        **combined.to_dict(),
        assignment=BatchReportResponse(**assignment.to_dict()),
        reminders=BatchReportResponse(**reminders.to_dict()),
    )


@router.post(
    "/events/{event_id}/assign-pools",
    response_model=BatchReportResponse,
    status_code=status.HTTP_200_OK,
)
def assign_event_pools(
    event_id: int,
    service: PoolAssignmentService = Depends(get_pool_assignment_service),
) -> BatchReportResponse:
    """Assign pools for one event; guard failures map to distinct status codes."""
    try:
        result = service.assign_event_pools(event_id)
    except EventNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (
        RegistrationStillOpenError,
        PoolsAlreadyAssignedError,
        RegistrationsChangedError,
    ) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (NoRegistrantsError, AllocationConfigurationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except MeetingProvisioningError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected pool assignment failure | event_id=%s", event_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to assign pools",
        ) from exc

    row = EventRunResult(
        event_id=event_id,
        title=result.title,
        status="success",
        details=result.to_dict(),
    )
    return BatchReportResponse(**BatchReport.from_results([row]).to_dict())


@router.post(
    "/notifications/drain",
    response_model=BatchReportResponse,
    status_code=status.HTTP_200_OK,
)
def drain_notifications(
    payload: DrainRequest | None = None,
    service: NotificationDispatchService = Depends(get_dispatch_service),
) -> BatchReportResponse:
    """Retry pending outbox rows; ``skipped`` counts rows still pending afterwards."""
    request = payload or DrainRequest()
    try:
        statuses = service.drain(event_id=request.event_id, limit=request.limit)
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected outbox drain failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to drain notifications",
        ) from exc
    return BatchReportResponse(
        processed=len(statuses),
        success=sum(1 for item in statuses if item.status == "sent"),
        failed=sum(1 for item in statuses if item.status == "failed"),
        skipped=sum(1 for item in statuses if item.status == "pending"),
        results=[item.to_dict() for item in statuses],
    )
