from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from turnstile.core.logging import SECURITY_LOGGER_NAME
from turnstile.credentials.codec import MAX_PAYLOAD_BYTES, CredentialCodec
from turnstile.credentials.errors import CredentialError, InvalidSignatureError
from turnstile.credentials.models import TicketClass, TicketCredential
from turnstile.dependencies.tickets import ScannerUser, get_credential_codec, get_redemption_engine
from turnstile.metrics import metrics_registry
from turnstile.metrics.definitions import CREDENTIAL_DECODE_FAILURES
from turnstile.redemption.engine import RedemptionEngine
from turnstile.redemption.models import DenialReason, OperatorResult, RedemptionOutcome
from turnstile.tickets.store import StoreUnavailableError

logger = logging.getLogger(__name__)
security_logger = logging.getLogger(SECURITY_LOGGER_NAME)

router = APIRouter(prefix="/scanner", tags=["scanner"])


class ScanRequest(BaseModel):
    payload: str = Field(..., min_length=1, max_length=MAX_PAYLOAD_BYTES + 2)
    expected_event_id: str | None = Field(default=None, min_length=1)
    gate_id: str | None = Field(default=None, min_length=1, max_length=64)


class OperatorResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    outcome: RedemptionOutcome
    message: str
    reason: DenialReason | None = None
    ticket_class: TicketClass | None = None
    used_at: datetime | None = None
    retryable: bool = False


CodecDep = Annotated[CredentialCodec, Depends(get_credential_codec)]
EngineDep = Annotated[RedemptionEngine, Depends(get_redemption_engine)]


def _decode(codec: CredentialCodec, payload: str, gate_id: str | None) -> TicketCredential | OperatorResult:
    try:
        return codec.decode(payload)
    except CredentialError as exc:
        result = OperatorResult.from_decode_error(exc)
        reason = result.reason.value if result.reason else "unknown"
        metrics_registry.counter(CREDENTIAL_DECODE_FAILURES, label_names=("reason",)).inc(labels={"reason": reason})
        if isinstance(exc, InvalidSignatureError):
            security_logger.warning("Credential with invalid signature submitted by gate %s", gate_id)
        return result


def _store_unavailable(exc: StoreUnavailableError) -> HTTPException:
    result = OperatorResult.store_unavailable()
    return HTTPException(
        status_code=503,
        detail=OperatorResultResponse.model_validate(result).model_dump(mode="json"),
        headers={"Retry-After": "1"},
    )


def _gate_id(request: Request, payload: ScanRequest) -> str | None:
    return payload.gate_id or getattr(request.state, "gate_id", None)


@router.post("/validate", response_model=OperatorResultResponse)
async def validate_credential(
    payload: ScanRequest,
    request: Request,
    codec: CodecDep,
    engine: EngineDep,
    _: ScannerUser,
) -> OperatorResultResponse:
    """Report what a redemption would decide, without consuming the ticket."""

    decoded = _decode(codec, payload.payload, _gate_id(request, payload))
    if isinstance(decoded, OperatorResult):
        return OperatorResultResponse.model_validate(decoded)
    try:
        redemption = await engine.check(decoded, expected_event_id=payload.expected_event_id)
    except StoreUnavailableError as exc:
        raise _store_unavailable(exc) from exc
    return OperatorResultResponse.model_validate(OperatorResult.from_redemption(redemption))


@router.post("/redeem", response_model=OperatorResultResponse)
async def redeem_credential(
    payload: ScanRequest,
    request: Request,
    codec: CodecDep,
    engine: EngineDep,
    _: ScannerUser,
) -> OperatorResultResponse:
    gate_id = _gate_id(request, payload)
    decoded = _decode(codec, payload.payload, gate_id)
    if isinstance(decoded, OperatorResult):
        return OperatorResultResponse.model_validate(decoded)
    try:
        redemption = await engine.redeem(decoded, gate_id=gate_id, expected_event_id=payload.expected_event_id)
    except StoreUnavailableError as exc:
        raise _store_unavailable(exc) from exc
    return OperatorResultResponse.model_validate(OperatorResult.from_redemption(redemption))
