"""
Operational Metrics for billing reconciliation.

Prometheus counters for webhook ledger outcomes and billing status changes.
"""

from prometheus_client import Counter

API_ERRORS_TOTAL = Counter(
    "tenant_billing_api_errors_total",
    "Total API errors returned by the service",
    ["path", "method", "status_code"],
)

WEBHOOK_EVENTS_RECEIVED = Counter(
    "tenant_billing_webhook_events_received_total",
    "Inbound webhook deliveries by source and event type",
    ["source", "event_type"],
)

WEBHOOK_EVENTS_DEDUPLICATED = Counter(
    "tenant_billing_webhook_events_deduplicated_total",
    "Webhook redeliveries short-circuited by the ledger",
    ["source", "status"],
)

WEBHOOK_PROCESSING_OUTCOMES = Counter(
    "tenant_billing_webhook_processing_outcomes_total",
    "Ledger status reached after a processing attempt",
    ["source", "event_type", "status"],
)

BILLING_STATUS_TRANSITIONS = Counter(
    "tenant_billing_status_transitions_total",
    "Applied billing status transitions",
    ["from_status", "to_status"],
)

BILLING_TRANSITIONS_REJECTED = Counter(
    "tenant_billing_status_transitions_rejected_total",
    "Billing status transitions refused by the state machine",
    ["from_status", "to_status"],
)
