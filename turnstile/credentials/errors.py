from __future__ import annotations

from turnstile.errors import TurnstileError


class CredentialError(TurnstileError):
    """Base error for payloads that cannot be turned into a trusted credential."""


class MalformedPayloadError(CredentialError):
    """Raised when scanned bytes do not parse as a canonical credential."""


class InvalidSignatureError(CredentialError):
    """Raised when a payload parses but its signature does not verify."""
