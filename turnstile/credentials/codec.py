"""Canonical, tamper-evident serialization of ticket credentials.

Transport format (version 1), fields separated by ``.`` in this fixed order::

    TK1.<ticket_id>.<event_id>.<holder_id>.<ticket_class>.<issued_at>.<nonce>.<signature>

* ``ticket_id``, ``event_id`` and ``holder_id`` are UTF-8 text encoded as
  unpadded base64url, so they can never contain the separator.
* ``ticket_class`` is the lowercase class literal.
* ``issued_at`` is UTC epoch seconds in decimal without leading zeros.
* ``nonce`` is 16 random bytes as unpadded base64url (22 characters).
* ``signature`` is HMAC-SHA256 over the ASCII bytes of everything before the
  last separator, as unpadded base64url (43 characters).

Only the exact canonical spelling decodes; any other spelling of the same
claims is rejected as malformed.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import secrets
from datetime import datetime, timezone

from .errors import InvalidSignatureError, MalformedPayloadError
from .keys import SigningKeyring
from .models import IssuedCredential, TicketClaims, TicketClass, TicketCredential

FORMAT_PREFIX = "TK1"
SEPARATOR = "."
NONCE_BYTES = 16
SIGNATURE_BYTES = 32
MAX_PAYLOAD_BYTES = 1024

_FIELD_COUNT = 8
_B64_RE = re.compile(r"[A-Za-z0-9_-]+")
_EPOCH_RE = re.compile(r"0|[1-9][0-9]{0,11}")
_NONCE_CHARS = 22
_SIGNATURE_CHARS = 43


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str, field: str) -> bytes:
    if not _B64_RE.fullmatch(text):
        raise MalformedPayloadError(f"Field '{field}' is not base64url encoded")
    try:
        raw = base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
    except (binascii.Error, ValueError) as exc:
        raise MalformedPayloadError(f"Field '{field}' is not base64url encoded") from exc
    if _b64encode(raw) != text:
        raise MalformedPayloadError(f"Field '{field}' is not canonically encoded")
    return raw


def _encode_text(value: str) -> str:
    return _b64encode(value.encode("utf-8"))


def _decode_text(text: str, field: str) -> str:
    raw = _b64decode(text, field)
    try:
        value = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedPayloadError(f"Field '{field}' is not valid UTF-8") from exc
    if not value:
        raise MalformedPayloadError(f"Field '{field}' is empty")
    return value


def _to_epoch_seconds(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _from_epoch_seconds(text: str) -> datetime:
    if not _EPOCH_RE.fullmatch(text):
        raise MalformedPayloadError("Field 'issued_at' is not canonical epoch seconds")
    try:
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as exc:
        raise MalformedPayloadError("Field 'issued_at' is out of range") from exc


def _require_text(value: str, field: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValueError(f"{field} must be a non-empty string")
    return value


class CredentialCodec:
    """Issue credentials and turn scanned payloads back into verified credentials.

    The codec holds no mutable state: the keyring is fixed at construction, so a
    single instance can be shared by every request and gate session.
    """

    def __init__(self, keyring: SigningKeyring) -> None:
        self._keyring = keyring

    def issue(self, claims: TicketClaims) -> IssuedCredential:
        """Sign ``claims`` with a fresh nonce and return the credential and its payload."""

        ticket_class = TicketClass(claims.ticket_class)
        epoch = _to_epoch_seconds(claims.issued_at)
        if epoch < 0:
            raise ValueError("issued_at must not precede the Unix epoch")
        issued_at = datetime.fromtimestamp(epoch, tz=timezone.utc)
        nonce = secrets.token_bytes(NONCE_BYTES)
        unsigned = self._unsigned_form(
            ticket_id=_require_text(claims.ticket_id, "ticket_id"),
            event_id=_require_text(claims.event_id, "event_id"),
            holder_id=_require_text(claims.holder_id, "holder_id"),
            ticket_class=ticket_class,
            issued_at=issued_at,
            nonce=nonce,
        )
        signature = self._sign(unsigned, self._keyring.active)
        payload = f"{unsigned}{SEPARATOR}{_b64encode(signature)}"
        if len(payload) > MAX_PAYLOAD_BYTES:
            raise ValueError(f"Credential payload exceeds {MAX_PAYLOAD_BYTES} bytes")

        credential = TicketCredential(
            ticket_id=claims.ticket_id,
            event_id=claims.event_id,
            holder_id=claims.holder_id,
            ticket_class=ticket_class,
            issued_at=issued_at,
            nonce=nonce,
            signature=signature,
        )
        return IssuedCredential(credential=credential, payload=payload)

    def serialize(self, credential: TicketCredential) -> str:
        """Return the canonical payload of an already signed credential."""

        unsigned = self._unsigned_form(
            ticket_id=credential.ticket_id,
            event_id=credential.event_id,
            holder_id=credential.holder_id,
            ticket_class=credential.ticket_class,
            issued_at=credential.issued_at,
            nonce=credential.nonce,
        )
        return f"{unsigned}{SEPARATOR}{_b64encode(credential.signature)}"

    def decode(self, raw: bytes | str) -> TicketCredential:
        """Parse and verify a scanned payload.

        Raises :class:`MalformedPayloadError` when the payload is not a canonical
        credential and :class:`InvalidSignatureError` when it is well formed but
        was not signed by any key of the keyring.
        """

        text = self._as_text(raw)
        unsigned, _, encoded_signature = text.rpartition(SEPARATOR)
        parts = text.split(SEPARATOR)
        if len(parts) != _FIELD_COUNT:
            raise MalformedPayloadError(f"Expected {_FIELD_COUNT} fields, found {len(parts)}")

        prefix, ticket_id, event_id, holder_id, ticket_class, issued_at, nonce, signature = parts
        if prefix != FORMAT_PREFIX:
            raise MalformedPayloadError("Unsupported credential format")
        if len(nonce) != _NONCE_CHARS:
            raise MalformedPayloadError("Field 'nonce' has the wrong length")
        if len(signature) != _SIGNATURE_CHARS:
            raise MalformedPayloadError("Field 'signature' has the wrong length")
        try:
            parsed_class = TicketClass(ticket_class)
        except ValueError as exc:
            raise MalformedPayloadError("Field 'ticket_class' is not a known class") from exc

        credential = TicketCredential(
            ticket_id=_decode_text(ticket_id, "ticket_id"),
            event_id=_decode_text(event_id, "event_id"),
            holder_id=_decode_text(holder_id, "holder_id"),
            ticket_class=parsed_class,
            issued_at=_from_epoch_seconds(issued_at),
            nonce=_b64decode(nonce, "nonce"),
            signature=_b64decode(encoded_signature, "signature"),
        )

        message = unsigned.encode("ascii")
        for key in self._keyring.verification_keys():
            if hmac.compare_digest(self._sign_bytes(message, key), credential.signature):
                return credential
        raise InvalidSignatureError("Credential signature does not verify")

    @staticmethod
    def _as_text(raw: bytes | str) -> str:
        if isinstance(raw, str):
            try:
                raw = raw.encode("ascii")
            except UnicodeEncodeError as exc:
                raise MalformedPayloadError("Payload contains non-ASCII characters") from exc
        if not isinstance(raw, (bytes, bytearray)):
            raise MalformedPayloadError("Payload must be bytes or text")
        raw = bytes(raw)
        # Hand-held scanners commonly terminate a symbol with a line break.
        if raw.endswith(b"\r\n"):
            raw = raw[:-2]
        elif raw.endswith(b"\n"):
            raw = raw[:-1]
        if not raw:
            raise MalformedPayloadError("Payload is empty")
        if len(raw) > MAX_PAYLOAD_BYTES:
            raise MalformedPayloadError(f"Payload exceeds {MAX_PAYLOAD_BYTES} bytes")
        try:
            return raw.decode("ascii")
        except UnicodeDecodeError as exc:
            raise MalformedPayloadError("Payload contains non-ASCII bytes") from exc

    @staticmethod
    def _unsigned_form(
        *,
        ticket_id: str,
        event_id: str,
        holder_id: str,
        ticket_class: TicketClass,
        issued_at: datetime,
        nonce: bytes,
    ) -> str:
        if len(nonce) != NONCE_BYTES:
            raise ValueError(f"Nonce must be {NONCE_BYTES} bytes")
        return SEPARATOR.join(
            (
                FORMAT_PREFIX,
                _encode_text(ticket_id),
                _encode_text(event_id),
                _encode_text(holder_id),
                ticket_class.value,
                str(_to_epoch_seconds(issued_at)),
                _b64encode(nonce),
            )
        )

    @classmethod
    def _sign(cls, unsigned: str, key: bytes) -> bytes:
        return cls._sign_bytes(unsigned.encode("ascii"), key)

    @staticmethod
    def _sign_bytes(message: bytes, key: bytes) -> bytes:
        return hmac.new(key, message, hashlib.sha256).digest()
