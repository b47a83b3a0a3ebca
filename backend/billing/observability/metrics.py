"""Prometheus metrics helpers for billing domain."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

WEBHOOK_EVENT_COUNT = Counter(
    "billing_webhook_events_total",
    "Webhook events by provider, normalized type and outcome",
    labelnames=("provider", "event_type", "outcome"),
)

WEBHOOK_LATENCY = Histogram(
    "billing_webhook_duration_seconds",
    "Latency of webhook processing",
    labelnames=("provider",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

WEBHOOK_DUPLICATE_COUNT = Counter(
    "billing_webhook_duplicates_total",
    "Webhook deliveries suppressed as duplicates",
    labelnames=("provider",),
)

WEBHOOK_SIGNATURE_FAILURE_COUNT = Counter(
    "billing_webhook_signature_failures_total",
    "Webhook deliveries rejected by signature verification",
    labelnames=("provider",),
)

CREDITS_GRANTED = Counter(
    "billing_credits_granted_total",
    "Credits written to the ledger",
    labelnames=("type",),
)

PAYMENT_FAILURE_COUNT = Counter(
    "billing_payment_failure_total",
    "Count of failed payments reported by the provider",
    labelnames=("event_type",),
)

CONSISTENCY_ISSUES_FOUND = Counter(
    "billing_consistency_issues_total",
    "Users found with user_type diverging from their subscription",
)

CONSISTENCY_FIXES = Counter(
    "billing_consistency_fixes_total",
    "Consistency repairs by outcome",
    labelnames=("outcome",),
)

GATEWAY_FAILURE_COUNT = Counter(
    "billing_gateway_failure_total",
    "Payment gateway calls that raised",
    labelnames=("operation",),
)
