"""
ASAAS webhook event types and payload shapes.

Payload models accept the processor's camelCase keys and ignore fields we do
not consume, so new processor fields never break ingestion.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


def _coerce_date(value: Any) -> Any:
    # ASAAS sends `YYYY-MM-DD` on payments and full timestamps elsewhere.
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and len(value) > 10:
        return value[:10]
    return value


AsaasDate = Annotated[Optional[date], BeforeValidator(_coerce_date)]


class AsaasEventType(str, Enum):
    # Payment events
    PAYMENT_CREATED = "PAYMENT_CREATED"
    PAYMENT_AWAITING_RISK_ANALYSIS = "PAYMENT_AWAITING_RISK_ANALYSIS"
    PAYMENT_APPROVED_BY_RISK_ANALYSIS = "PAYMENT_APPROVED_BY_RISK_ANALYSIS"
    PAYMENT_REPROVED_BY_RISK_ANALYSIS = "PAYMENT_REPROVED_BY_RISK_ANALYSIS"
    PAYMENT_UPDATED = "PAYMENT_UPDATED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    PAYMENT_ANTICIPATED = "PAYMENT_ANTICIPATED"
    PAYMENT_OVERDUE = "PAYMENT_OVERDUE"
    PAYMENT_DELETED = "PAYMENT_DELETED"
    PAYMENT_RESTORED = "PAYMENT_RESTORED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    PAYMENT_RECEIVED_IN_CASH_UNDONE = "PAYMENT_RECEIVED_IN_CASH_UNDONE"
    PAYMENT_CHARGEBACK_REQUESTED = "PAYMENT_CHARGEBACK_REQUESTED"
    PAYMENT_CHARGEBACK_DISPUTE = "PAYMENT_CHARGEBACK_DISPUTE"
    PAYMENT_AWAITING_CHARGEBACK_REVERSAL = "PAYMENT_AWAITING_CHARGEBACK_REVERSAL"
    PAYMENT_DUNNING_RECEIVED = "PAYMENT_DUNNING_RECEIVED"
    PAYMENT_DUNNING_REQUESTED = "PAYMENT_DUNNING_REQUESTED"

    # Subscription events
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"

    # Transfer events
    TRANSFER_CREATED = "TRANSFER_CREATED"
    TRANSFER_PENDING = "TRANSFER_PENDING"
    TRANSFER_IN_BANK_PROCESSING = "TRANSFER_IN_BANK_PROCESSING"
    TRANSFER_BLOCKED = "TRANSFER_BLOCKED"
    TRANSFER_DONE = "TRANSFER_DONE"
    TRANSFER_FAILED = "TRANSFER_FAILED"
    TRANSFER_CANCELLED = "TRANSFER_CANCELLED"

    # Invoice (nota fiscal) events
    INVOICE_CREATED = "INVOICE_CREATED"
    INVOICE_UPDATED = "INVOICE_UPDATED"
    INVOICE_SYNCHRONIZED = "INVOICE_SYNCHRONIZED"
    INVOICE_AUTHORIZED = "INVOICE_AUTHORIZED"
    INVOICE_PROCESSING_CANCELLATION = "INVOICE_PROCESSING_CANCELLATION"
    INVOICE_CANCELED = "INVOICE_CANCELED"
    INVOICE_CANCELLATION_DENIED = "INVOICE_CANCELLATION_DENIED"
    INVOICE_ERROR = "INVOICE_ERROR"


class AsaasPaymentStatus(str, Enum):
    PENDING = "PENDING"
    RECEIVED = "RECEIVED"
    CONFIRMED = "CONFIRMED"
    OVERDUE = "OVERDUE"
    REFUNDED = "REFUNDED"
    RECEIVED_IN_CASH = "RECEIVED_IN_CASH"
    REFUND_REQUESTED = "REFUND_REQUESTED"
    CHARGEBACK_REQUESTED = "CHARGEBACK_REQUESTED"
    CHARGEBACK_DISPUTE = "CHARGEBACK_DISPUTE"
    AWAITING_CHARGEBACK_REVERSAL = "AWAITING_CHARGEBACK_REVERSAL"
    DUNNING_REQUESTED = "DUNNING_REQUESTED"
    DUNNING_RECEIVED = "DUNNING_RECEIVED"
    AWAITING_RISK_ANALYSIS = "AWAITING_RISK_ANALYSIS"


class AsaasSubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"


REQUIRED_ASAAS_EVENTS: tuple[AsaasEventType, ...] = (
    AsaasEventType.PAYMENT_CREATED,
    AsaasEventType.PAYMENT_CONFIRMED,
    AsaasEventType.PAYMENT_RECEIVED,
    AsaasEventType.PAYMENT_OVERDUE,
    AsaasEventType.PAYMENT_REFUNDED,
    AsaasEventType.SUBSCRIPTION_ACTIVATED,
    AsaasEventType.SUBSCRIPTION_CANCELED,
)


class _AsaasModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AsaasRefund(_AsaasModel):
    date_created: Optional[str] = Field(default=None, alias="dateCreated")
    status: Optional[str] = None
    value: float = 0.0
    description: Optional[str] = None


class AsaasPaymentPayload(_AsaasModel):
    id: str
    customer: str
    subscription: Optional[str] = None
    value: float = 0.0
    net_value: Optional[float] = Field(default=None, alias="netValue")
    original_value: Optional[float] = Field(default=None, alias="originalValue")
    description: Optional[str] = None
    billing_type: Optional[str] = Field(default=None, alias="billingType")
    # Kept as a raw string: the processor adds statuses without notice.
    status: Optional[str] = None
    due_date: AsaasDate = Field(default=None, alias="dueDate")
    original_due_date: AsaasDate = Field(default=None, alias="originalDueDate")
    payment_date: AsaasDate = Field(default=None, alias="paymentDate")
    client_payment_date: AsaasDate = Field(
        default=None, alias="clientPaymentDate"
    )
    confirmed_date: AsaasDate = Field(default=None, alias="confirmedDate")
    credit_date: AsaasDate = Field(default=None, alias="creditDate")
    invoice_url: Optional[str] = Field(default=None, alias="invoiceUrl")
    invoice_number: Optional[str] = Field(default=None, alias="invoiceNumber")
    bank_slip_url: Optional[str] = Field(default=None, alias="bankSlipUrl")
    external_reference: Optional[str] = Field(default=None, alias="externalReference")
    deleted: bool = False
    anticipated: bool = False
    refunds: Optional[list[AsaasRefund]] = None


class AsaasSubscriptionPayload(_AsaasModel):
    id: str
    customer: str
    value: float = 0.0
    next_due_date: AsaasDate = Field(default=None, alias="nextDueDate")
    cycle: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    billing_type: Optional[str] = Field(default=None, alias="billingType")
    external_reference: Optional[str] = Field(default=None, alias="externalReference")
    deleted: bool = False


class AsaasWebhookEvent(_AsaasModel):
    """
    Envelope of one webhook delivery.

    `event` stays a plain string so unknown types reach the dispatcher and
    are rejected there explicitly. `id` is the processor's delivery id used
    for deduplication when present.
    """

    id: Optional[str] = None
    event: str
    payment: Optional[dict[str, Any]] = None
    subscription: Optional[dict[str, Any]] = None
    transfer: Optional[dict[str, Any]] = None
    invoice: Optional[dict[str, Any]] = None


def parse_event_type(value: Any) -> Optional[AsaasEventType]:
    """Return the known event type for `value`, or None."""
    try:
        return AsaasEventType(value)
    except ValueError:
        return None


def is_asaas_event_type(value: Any) -> bool:
    return parse_event_type(value) is not None


def is_payment_event(event_type: AsaasEventType) -> bool:
    return AsaasEventType(event_type).value.startswith("PAYMENT_")


def is_subscription_event(event_type: AsaasEventType) -> bool:
    return AsaasEventType(event_type).value.startswith("SUBSCRIPTION_")
