from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from turnstile.credentials.codec import CredentialCodec
from turnstile.dependencies.auth import Role, User, role_required
from turnstile.redemption.engine import RedemptionEngine
from turnstile.tickets.service import TicketService

require_admin = role_required(Role.ADMIN)
require_issuer = role_required(Role.ISSUER)
require_scanner = role_required(Role.SCANNER)
require_viewer = role_required(Role.VIEWER)

AdminUser = Annotated[User, Depends(require_admin)]
IssuerUser = Annotated[User, Depends(require_issuer)]
ScannerUser = Annotated[User, Depends(require_scanner)]
ViewerUser = Annotated[User, Depends(require_viewer)]


def _from_state(request: Request, name: str, label: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail=f"{label} is not configured")
    return value


async def get_ticket_service(request: Request) -> TicketService:
    return _from_state(request, "ticket_service", "Ticket service")


async def get_redemption_engine(request: Request) -> RedemptionEngine:
    return _from_state(request, "redemption_engine", "Redemption engine")


async def get_credential_codec(request: Request) -> CredentialCodec:
    return _from_state(request, "credential_codec", "Credential codec")
