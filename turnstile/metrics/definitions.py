"""Metric definitions used across the application."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

CREDENTIALS_ISSUED = "turnstile_credentials_issued_total"
CREDENTIAL_DECODE_FAILURES = "turnstile_credential_decode_failures_total"
REDEMPTIONS = "turnstile_redemptions_total"
REDEMPTION_DURATION = "turnstile_redemption_duration_seconds"
STORE_UNAVAILABLE = "turnstile_store_unavailable_total"
SCAN_SESSIONS_ACTIVE = "turnstile_scan_sessions_active"
SCAN_CYCLES = "turnstile_scan_cycles_total"
TICKETS_CANCELLED = "turnstile_tickets_cancelled_total"


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name=CREDENTIALS_ISSUED,
        metric_type="counter",
        description="Ticket credentials issued after a confirmed purchase.",
        label_names=("ticket_class",),
    ),
    MetricDefinition(
        name=CREDENTIAL_DECODE_FAILURES,
        metric_type="counter",
        description="Scanned payloads rejected before reaching the ticket store.",
        label_names=("reason",),
    ),
    MetricDefinition(
        name=REDEMPTIONS,
        metric_type="counter",
        description="Redemption decisions taken by the engine.",
        label_names=("outcome", "reason"),
    ),
    MetricDefinition(
        name=REDEMPTION_DURATION,
        metric_type="distribution",
        description="Duration of redeem calls in seconds.",
    ),
    MetricDefinition(
        name=STORE_UNAVAILABLE,
        metric_type="counter",
        description="Redeem calls that failed because the ticket store was unreachable.",
    ),
    MetricDefinition(
        name=SCAN_SESSIONS_ACTIVE,
        metric_type="gauge",
        description="Gate scan sessions currently running.",
    ),
    MetricDefinition(
        name=SCAN_CYCLES,
        metric_type="counter",
        description="Completed capture cycles across all gate sessions.",
        label_names=("outcome",),
    ),
    MetricDefinition(
        name=TICKETS_CANCELLED,
        metric_type="counter",
        description="Tickets cancelled through the administrative action.",
    ),
)
