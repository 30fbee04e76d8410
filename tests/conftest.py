from __future__ import annotations

from datetime import datetime, timezone

import pytest

from turnstile.credentials import CredentialCodec, SigningKeyring, TicketClaims, TicketClass
from turnstile.metrics import MetricsRegistry, register_default_metrics
from turnstile.redemption import RedemptionBroadcaster, RedemptionEngine
from turnstile.tickets import InMemoryTicketStore

SIGNING_KEY = b"k" * 32
ISSUED_AT = datetime(2026, 3, 14, 18, 30, tzinfo=timezone.utc)


@pytest.fixture
def keyring() -> SigningKeyring:
    return SigningKeyring(active=SIGNING_KEY)


@pytest.fixture
def codec(keyring: SigningKeyring) -> CredentialCodec:
    return CredentialCodec(keyring)


@pytest.fixture
def claims() -> TicketClaims:
    return TicketClaims(
        ticket_id="T1",
        event_id="E1",
        holder_id="U1",
        ticket_class=TicketClass.REGULAR,
        issued_at=ISSUED_AT,
    )


@pytest.fixture
def registry() -> MetricsRegistry:
    return register_default_metrics(MetricsRegistry())


@pytest.fixture
def store() -> InMemoryTicketStore:
    return InMemoryTicketStore()


@pytest.fixture
def broadcaster() -> RedemptionBroadcaster:
    return RedemptionBroadcaster()


@pytest.fixture
def engine(store, broadcaster, registry) -> RedemptionEngine:
    return RedemptionEngine(store, broadcaster=broadcaster, metrics=registry)
