from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field

from turnstile.core.config import Settings, get_settings
from turnstile.credentials.models import TicketClass
from turnstile.credentials.rendering import render_png, render_svg
from turnstile.dependencies.tickets import AdminUser, IssuerUser, ViewerUser, get_ticket_service
from turnstile.tickets.models import ScanLogEntry, TicketRecord
from turnstile.tickets.service import InvalidTicketTransitionError, TicketNotFoundError, TicketService
from turnstile.tickets.state import TicketStatus
from turnstile.tickets.store import StoreUnavailableError, TicketAlreadyExistsError

router = APIRouter(prefix="/tickets", tags=["tickets"])


class TicketIssueRequest(BaseModel):
    ticket_id: str = Field(..., min_length=1, max_length=64)
    event_id: str = Field(..., min_length=1, max_length=64)
    holder_id: str = Field(..., min_length=1, max_length=64)
    ticket_class: TicketClass = TicketClass.REGULAR


class TicketCancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket_id: str
    event_id: str
    holder_id: str
    ticket_class: TicketClass
    status: TicketStatus
    created_at: datetime
    used_at: datetime | None = None
    used_by_gate: str | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None


class IssuedTicketResponse(BaseModel):
    ticket: TicketResponse
    payload: str


class ScanLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str | None
    event_id: str | None
    gate_id: str | None
    outcome: str
    reason: str | None
    scanned_at: datetime
    metadata: dict[str, Any]


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
SettingsDep = Annotated[Settings, Depends(get_settings)]


def _to_response(record: TicketRecord) -> TicketResponse:
    return TicketResponse.model_validate(record)


def _to_scan_response(entry: ScanLogEntry) -> ScanLogResponse:
    return ScanLogResponse.model_validate(entry)


def _unavailable(exc: StoreUnavailableError) -> HTTPException:
    return HTTPException(status_code=503, detail=str(exc), headers={"Retry-After": "1"})


@router.post("", response_model=IssuedTicketResponse, status_code=status.HTTP_201_CREATED)
async def issue_ticket(
    payload: TicketIssueRequest,
    service: TicketServiceDep,
    _: IssuerUser,
) -> IssuedTicketResponse:
    try:
        issued = await service.on_purchase_confirmed(
            payload.ticket_id,
            payload.event_id,
            payload.holder_id,
            payload.ticket_class,
        )
        record = await service.get_ticket(payload.ticket_id)
    except TicketAlreadyExistsError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    return IssuedTicketResponse(ticket=_to_response(record), payload=issued.payload)


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: str, service: TicketServiceDep, _: ViewerUser) -> TicketResponse:
    try:
        record = await service.get_ticket(ticket_id)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    return _to_response(record)


@router.get("/{ticket_id}/qr", response_class=Response)
async def get_ticket_qr(
    ticket_id: str,
    service: TicketServiceDep,
    settings: SettingsDep,
    _: ViewerUser,
    image_format: Literal["png", "svg"] = Query(default="png", alias="format"),
) -> Response:
    try:
        payload = await service.get_credential_payload(ticket_id)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc

    if image_format == "svg":
        body = render_svg(payload, scale=settings.qr_scale, border=settings.qr_border)
        return Response(content=body, media_type="image/svg+xml")
    body = render_png(payload, scale=settings.qr_scale, border=settings.qr_border)
    return Response(content=body, media_type="image/png")


@router.post("/{ticket_id}/cancel", response_model=TicketResponse)
async def cancel_ticket(
    ticket_id: str,
    service: TicketServiceDep,
    user: AdminUser,
    payload: TicketCancelRequest | None = None,
) -> TicketResponse:
    try:
        record = await service.cancel_ticket(
            ticket_id,
            actor=user.username,
            reason=payload.reason if payload else None,
        )
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTicketTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    return _to_response(record)


@router.get("/{ticket_id}/scans", response_model=list[ScanLogResponse])
async def get_ticket_scans(ticket_id: str, service: TicketServiceDep, _: AdminUser) -> list[ScanLogResponse]:
    try:
        entries = await service.list_scans(ticket_id)
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    return [_to_scan_response(entry) for entry in entries]
