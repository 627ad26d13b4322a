"""
Billing status state machine.

Pure, side-effect free. Every status change in the reconciler goes through
`ensure_transition`; `canceled` is terminal and reactivation needs a new
subscription, not a transition.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping


class BillingStatus(str, Enum):
    """Subscription/payment state of a tenant."""

    TRIAL = "trial"
    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    OVERDUE = "overdue"
    SUSPENDED = "suspended"
    CANCELED = "canceled"


BILLING_STATUS_TRANSITIONS: Mapping[BillingStatus, frozenset[BillingStatus]] = {
    BillingStatus.TRIAL: frozenset(
        {BillingStatus.ACTIVE, BillingStatus.PENDING_PAYMENT, BillingStatus.CANCELED}
    ),
    BillingStatus.PENDING_PAYMENT: frozenset(
        {BillingStatus.ACTIVE, BillingStatus.OVERDUE, BillingStatus.CANCELED}
    ),
    BillingStatus.ACTIVE: frozenset({BillingStatus.OVERDUE, BillingStatus.CANCELED}),
    BillingStatus.OVERDUE: frozenset(
        {BillingStatus.ACTIVE, BillingStatus.SUSPENDED, BillingStatus.CANCELED}
    ),
    BillingStatus.SUSPENDED: frozenset({BillingStatus.ACTIVE, BillingStatus.CANCELED}),
    BillingStatus.CANCELED: frozenset(),
}

FULL_ACCESS_STATUSES = frozenset({BillingStatus.ACTIVE, BillingStatus.TRIAL})
LIMITED_ACCESS_STATUSES = frozenset(
    {BillingStatus.OVERDUE, BillingStatus.PENDING_PAYMENT}
)
DENIED_ACCESS_STATUSES = frozenset({BillingStatus.SUSPENDED, BillingStatus.CANCELED})


def is_billing_status(value: Any) -> bool:
    """Type guard for raw status strings coming from storage or payloads."""
    if isinstance(value, BillingStatus):
        return True
    try:
        BillingStatus(value)
    except ValueError:
        return False
    return True


def is_valid_transition(from_status: BillingStatus, to_status: BillingStatus) -> bool:
    """True when `to_status` is adjacent to `from_status` in the transition table."""
    return to_status in BILLING_STATUS_TRANSITIONS.get(BillingStatus(from_status), ())


def ensure_transition(from_status: BillingStatus, to_status: BillingStatus) -> bool:
    """
    Validate a status change before it is applied.

    Returns False when the statuses are equal (nothing to apply), True when
    the change is a legal transition, and raises otherwise.

    Raises:
        InvalidBillingTransitionError: the pair is not in the table.
    """
    from_status = BillingStatus(from_status)
    to_status = BillingStatus(to_status)
    if from_status == to_status:
        return False
    if not is_valid_transition(from_status, to_status):
        # errors.py imports BillingStatus; avoid top-level import to prevent circularity
        from tenant_billing.modules.billing.domain.billing.errors import (
            InvalidBillingTransitionError,
        )

        raise InvalidBillingTransitionError(from_status, to_status)
    return True


def has_full_access(status: BillingStatus) -> bool:
    return BillingStatus(status) in FULL_ACCESS_STATUSES


def has_limited_access(status: BillingStatus) -> bool:
    return BillingStatus(status) in LIMITED_ACCESS_STATUSES


def has_any_access(status: BillingStatus) -> bool:
    return has_full_access(status) or has_limited_access(status)
