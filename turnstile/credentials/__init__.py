"""Signed ticket credentials embedded in QR codes."""

from .codec import CredentialCodec, FORMAT_PREFIX, MAX_PAYLOAD_BYTES
from .errors import CredentialError, InvalidSignatureError, MalformedPayloadError
from .keys import SigningKeyring
from .models import IssuedCredential, TicketClaims, TicketClass, TicketCredential
from .rendering import render_png, render_svg

__all__ = [
    "CredentialCodec",
    "CredentialError",
    "FORMAT_PREFIX",
    "InvalidSignatureError",
    "IssuedCredential",
    "MAX_PAYLOAD_BYTES",
    "MalformedPayloadError",
    "SigningKeyring",
    "TicketClaims",
    "TicketClass",
    "TicketCredential",
    "render_png",
    "render_svg",
]
