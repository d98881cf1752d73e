"""Controller layer for admin login, events, facilitators and registrations."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, Field, field_validator

from fitpool.clients.base import PaymentGatewayError
from fitpool.controllers.dependencies import (
    bearer_scheme,
    get_auth_service,
    get_event_service,
    get_registration_service,
    require_admin,
)
from fitpool.domain.models import Registrant
from fitpool.services.auth_service import (
    AdminTokenNotConfiguredError,
    AuthService,
    InvalidAdminTokenError,
)
from fitpool.services.event_service import (
    DuplicateFacilitatorError,
    EventLockedError,
    EventNotFoundError,
    EventService,
    EventValidationError,
    event_to_dict,
)
from fitpool.services.registration_service import (
    AlreadyRegisteredError,
    EventFullError,
    PaymentRequiredError,
    PaymentVerificationError,
    RegistrantNotFoundError,
    RegistrationClosedError,
    RegistrationError,
    RegistrationService,
)
from fitpool.utils.logger import get_logger
from fitpool.utils.phone import InvalidMobileNumberError


logger = get_logger(__name__)

router = APIRouter(tags=["events"])


class LoginRequest(BaseModel):
    admin_token: str = Field(min_length=1)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class FacilitatorRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    mobile_number: str = Field(min_length=10, max_length=20)
    email: str | None = Field(default=None, max_length=254)


class FacilitatorResponse(BaseModel):
    facilitator_id: int = Field(gt=0)
    name: str
    mobile_number: str
    email: str | None = None


class EventCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    category: str = Field(min_length=1, max_length=80)
    event_date: date
    event_time: str = Field(min_length=1, max_length=60)
    price: float = Field(default=0.0, ge=0.0)
    max_capacity: int | None = Field(default=None, gt=0)
    pool_capacity: int | None = Field(default=None, gt=0)
    registration_deadline: datetime | None = None
    facilitator_ids: list[int] = Field(min_length=1)

    @field_validator("facilitator_ids")
    @classmethod
    def validate_facilitator_ids(cls, value: list[int]) -> list[int]:
        if any(item <= 0 for item in value):
            raise ValueError("facilitator_ids must be positive integers")
        return value


class EventUpdateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    category: str = Field(min_length=1, max_length=80)
    event_date: date
    event_time: str = Field(min_length=1, max_length=60)
    price: float = Field(default=0.0, ge=0.0)
    max_capacity: int | None = Field(default=None, gt=0)
    pool_capacity: int | None = Field(default=None, gt=0)
    registration_deadline: datetime | None = None
    facilitator_ids: list[int] | None = Field(default=None, min_length=1)

    @field_validator("facilitator_ids")
    @classmethod
    def validate_facilitator_ids(cls, value: list[int] | None) -> list[int] | None:
        if value is not None and any(item <= 0 for item in value):
            raise ValueError("facilitator_ids must be positive integers")
        return value


class RegistrantRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    mobile_number: str = Field(min_length=10, max_length=20)
    email: str | None = Field(default=None, max_length=254)


class FreeRegistrationRequest(BaseModel):
    mobile_number: str = Field(min_length=10, max_length=20)


class OrderRequest(BaseModel):
    mobile_number: str = Field(min_length=10, max_length=20)
    amount: int = Field(gt=0, description="Amount in paise")


class OrderResponse(BaseModel):
    order_id: str
    amount: int
    currency: str


class PaymentVerificationRequest(BaseModel):
    mobile_number: str = Field(min_length=10, max_length=20)
    order_id: str = Field(min_length=1)
    payment_id: str = Field(min_length=1)
    signature: str = Field(min_length=1)
    amount: int = Field(gt=0, description="Amount in paise")


def _registration_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (EventNotFoundError, RegistrantNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (AlreadyRegisteredError, EventFullError, RegistrationClosedError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, PaymentRequiredError):
        code = status.HTTP_402_PAYMENT_REQUIRED
    elif isinstance(exc, PaymentGatewayError):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(exc))


def _registrant_to_dict(registrant: Registrant) -> dict[str, Any]:
    return {
        "registrant_id": registrant.registrant_id,
        "name": registrant.name,
        "mobile_number": registrant.mobile_number,
        "email": registrant.email,
    }


@router.post("/login", response_model=LoginResponse, status_code=status.HTTP_200_OK)
async def login(
    payload: LoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    try:
        bearer = auth_service.login(payload.admin_token)
        return LoginResponse(access_token=bearer)
    except (AdminTokenNotConfiguredError, InvalidAdminTokenError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected login failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to login",
        ) from exc


@router.post(
    "/logout",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
)
async def logout(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> Response:
    if credentials is not None:
        auth_service.logout(credentials.credentials)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/facilitators",
    response_model=FacilitatorResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def create_facilitator(
    payload: FacilitatorRequest,
    service: EventService = Depends(get_event_service),
) -> FacilitatorResponse:
    try:
        facilitator = service.create_facilitator(payload.name, payload.mobile_number, payload.email)
    except DuplicateFacilitatorError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (EventValidationError, InvalidMobileNumberError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return FacilitatorResponse(
        facilitator_id=facilitator.facilitator_id,
        name=facilitator.name,
        mobile_number=facilitator.mobile_number,
        email=facilitator.email,
    )


@router.get(
    "/facilitators",
    response_model=list[FacilitatorResponse],
    dependencies=[Depends(require_admin)],
)
def list_facilitators(
    service: EventService = Depends(get_event_service),
) -> list[FacilitatorResponse]:
    return [
        FacilitatorResponse(
            facilitator_id=item.facilitator_id,
            name=item.name,
            mobile_number=item.mobile_number,
            email=item.email,
        )
        for item in service.list_facilitators()
    ]


@router.post(
    "/events",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def create_event(
    payload: EventCreateRequest,
    service: EventService = Depends(get_event_service),
) -> dict[str, Any]:
    try:
        event = service.create_event(
            title=payload.title,
            description=payload.description,
            category=payload.category,
            event_date=payload.event_date.isoformat(),
            event_time=payload.event_time,
            price=payload.price,
            max_capacity=payload.max_capacity,
            pool_capacity=payload.pool_capacity,
            registration_deadline=payload.registration_deadline,
            facilitator_ids=payload.facilitator_ids,
        )
    except EventValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected event creation failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create event",
        ) from exc
    return event_to_dict(event)


@router.get("/events", dependencies=[Depends(require_admin)])
def list_events(
    upcoming: bool = Query(default=False),
    service: EventService = Depends(get_event_service),
) -> list[dict[str, Any]]:
    return [event_to_dict(item) for item in service.list_events(upcoming_only=upcoming)]


@router.get("/events/{event_id}", dependencies=[Depends(require_admin)])
def get_event_detail(
    event_id: int,
    service: EventService = Depends(get_event_service),
) -> dict[str, Any]:
    try:
        return service.get_event_detail(event_id).to_dict()
    except EventNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.put("/events/{event_id}", dependencies=[Depends(require_admin)])
def update_event(
    event_id: int,
    payload: EventUpdateRequest,
    service: EventService = Depends(get_event_service),
) -> dict[str, Any]:
    try:
        event = service.update_event(
            event_id,
            title=payload.title,
            description=payload.description,
            category=payload.category,
            event_date=payload.event_date.isoformat(),
            event_time=payload.event_time,
            price=payload.price,
            max_capacity=payload.max_capacity,
            pool_capacity=payload.pool_capacity,
            registration_deadline=payload.registration_deadline,
            facilitator_ids=payload.facilitator_ids,
        )
    except EventNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except EventLockedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except EventValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected event update failure | event_id=%s", event_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update event",
        ) from exc
    return event_to_dict(event)


@router.delete(
    "/events/{event_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
)
def delete_event(
    event_id: int,
    service: EventService = Depends(get_event_service),
) -> Response:
    try:
        service.delete_event(event_id)
    except EventNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except EventLockedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/registrants", status_code=status.HTTP_200_OK)
def upsert_registrant(
    payload: RegistrantRequest,
    service: RegistrationService = Depends(get_registration_service),
) -> dict[str, Any]:
    try:
        registrant = service.upsert_registrant(payload.name, payload.mobile_number, payload.email)
    except (RegistrationError, InvalidMobileNumberError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _registrant_to_dict(registrant)


@router.get("/registrants", dependencies=[Depends(require_admin)])
def list_registrants(
    service: RegistrationService = Depends(get_registration_service),
) -> list[dict[str, Any]]:
    return [_registrant_to_dict(item) for item in service.list_registrants()]


@router.get("/registrants/{mobile_number}", dependencies=[Depends(require_admin)])
def get_registrant(
    mobile_number: str,
    service: RegistrationService = Depends(get_registration_service),
) -> dict[str, Any]:
    try:
        return _registrant_to_dict(service.get_registrant(mobile_number))
    except RegistrantNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidMobileNumberError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/events/{event_id}/register", status_code=status.HTTP_201_CREATED)
def register_free(
    event_id: int,
    payload: FreeRegistrationRequest,
    service: RegistrationService = Depends(get_registration_service),
) -> dict[str, Any]:
    try:
        return service.register_free(event_id, payload.mobile_number).to_dict()
    except (
        RegistrationError,
        EventNotFoundError,
        InvalidMobileNumberError,
    ) as exc:
        raise _registration_http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected registration failure | event_id=%s", event_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to register",
        ) from exc


@router.post(
    "/events/{event_id}/order",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_order(
    event_id: int,
    payload: OrderRequest,
    service: RegistrationService = Depends(get_registration_service),
) -> OrderResponse:
    """Open a payment order the checkout page completes and then verifies."""
    try:
        order = service.create_payment_order(event_id, payload.mobile_number, payload.amount)
    except (
        RegistrationError,
        EventNotFoundError,
        InvalidMobileNumberError,
        PaymentGatewayError,
    ) as exc:
        raise _registration_http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected order creation failure | event_id=%s", event_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create order",
        ) from exc
    return OrderResponse(order_id=order.order_id, amount=order.amount_paise, currency=order.currency)


@router.post("/events/{event_id}/verify-payment", status_code=status.HTTP_201_CREATED)
def verify_payment(
    event_id: int,
    payload: PaymentVerificationRequest,
    service: RegistrationService = Depends(get_registration_service),
) -> dict[str, Any]:
    """Verify a checkout signature and record the paid registration."""
    try:
        return service.confirm_paid_registration(
            event_id,
            payload.mobile_number,
            order_id=payload.order_id,
            payment_id=payload.payment_id,
            signature=payload.signature,
            amount_paise=payload.amount,
        ).to_dict()
    except (
        RegistrationError,
        EventNotFoundError,
        InvalidMobileNumberError,
        PaymentGatewayError,
    ) as exc:
        raise _registration_http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected payment verification failure | event_id=%s", event_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to verify payment",
        ) from exc
