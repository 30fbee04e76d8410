from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator

from pydantic import SecretStr

from turnstile.core.config import Settings

MIN_KEY_BYTES = 32


@dataclass(frozen=True, slots=True)
class SigningKeyring:
    """Immutable HMAC keys used to sign and verify credentials.

    ``active`` signs every new credential. ``retired`` keys are only accepted
    when verifying, so credentials already in circulation survive a rotation.
    """

    active: bytes
    retired: tuple[bytes, ...] = ()

    def __post_init__(self) -> None:
        for key in (self.active, *self.retired):
            if len(key) < MIN_KEY_BYTES:
                raise ValueError(f"Signing keys must be at least {MIN_KEY_BYTES} bytes long")

    def verification_keys(self) -> Iterator[bytes]:
        yield self.active
        yield from self.retired

    @classmethod
    def from_secrets(cls, active: str | SecretStr, retired: Iterable[str | SecretStr] = ()) -> "SigningKeyring":
        return cls(
            active=_secret_bytes(active),
            retired=tuple(_secret_bytes(key) for key in retired),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningKeyring":
        return cls.from_secrets(settings.credential_signing_key, settings.credential_retired_keys)

    def __repr__(self) -> str:
        return f"SigningKeyring(active=<redacted>, retired=<{len(self.retired)} redacted>)"


def _secret_bytes(value: str | SecretStr) -> bytes:
    if isinstance(value, SecretStr):
        value = value.get_secret_value()
    return value.encode("utf-8")
