"""Billing error taxonomy."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, Sequence

from tenant_billing.shared.core.exceptions import TenantBillingException
from tenant_billing.modules.billing.domain.billing.billing_status import BillingStatus


class BillingErrorCode(str, Enum):
    BILLING_ERROR = "billing_error"
    SUBSCRIPTION_CREATION_ERROR = "subscription_creation_error"
    SUBSCRIPTION_CANCELLATION_ERROR = "subscription_cancellation_error"
    CUSTOMER_CREATION_ERROR = "customer_creation_error"
    WEBHOOK_INVALID = "webhook_invalid"
    BILLING_STATUS_INVALID = "billing_status_invalid"
    ASAAS_API_ERROR = "asaas_api_error"
    INVALID_BILLING_TRANSITION = "invalid_billing_transition"
    WEBHOOK_STATE_CONFLICT = "webhook_state_conflict"


class BillingError(TenantBillingException):
    """Base billing error. `retryable` tells the webhook ledger whether to try again."""

    retryable: bool = True

    def __init__(
        self,
        message: str,
        code: BillingErrorCode = BillingErrorCode.BILLING_ERROR,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message, code=code.value, status_code=status_code, details=details
        )
        self.billing_code = code


class InvalidBillingTransitionError(BillingError):
    """A status change outside the adjacency table was attempted."""

    def __init__(
        self,
        from_status: BillingStatus,
        to_status: BillingStatus,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.from_status = BillingStatus(from_status)
        self.to_status = BillingStatus(to_status)
        super().__init__(
            f"Invalid billing status transition from '{self.from_status.value}' "
            f"to '{self.to_status.value}'",
            code=BillingErrorCode.INVALID_BILLING_TRANSITION,
            status_code=409,
            details={
                "from_status": self.from_status.value,
                "to_status": self.to_status.value,
                **(details or {}),
            },
        )


class WebhookInvalidError(BillingError):
    """Bad token, unknown event type or malformed payload. Never retried."""

    retryable = False

    def __init__(
        self,
        message: str = "Invalid webhook payload",
        event_type: Optional[str] = None,
        status_code: int = 400,
    ):
        self.event_type = event_type
        details: Dict[str, Any] = {}
        if event_type:
            details["event_type"] = event_type
        super().__init__(
            message,
            code=BillingErrorCode.WEBHOOK_INVALID,
            status_code=status_code,
            details=details,
        )


class BillingStatusInvalidError(BillingError):
    """The tenant's billing status does not allow the requested operation."""

    def __init__(
        self,
        current_status: BillingStatus,
        message: str,
        required_status: Optional[Sequence[BillingStatus]] = None,
    ):
        self.current_status = BillingStatus(current_status)
        self.required_status = list(required_status) if required_status else None
        details: Dict[str, Any] = {"current_status": self.current_status.value}
        if self.required_status:
            details["required_status"] = [s.value for s in self.required_status]
        super().__init__(
            message,
            code=BillingErrorCode.BILLING_STATUS_INVALID,
            status_code=402,
            details=details,
        )


class AsaasApiError(BillingError):
    """Processor API failure (HTTP error, timeout, malformed response)."""

    def __init__(
        self,
        http_status_code: int,
        message: str,
        api_errors: Optional[list[dict[str, Any]]] = None,
    ):
        self.http_status_code = http_status_code
        self.api_errors = api_errors or []
        details: Dict[str, Any] = {"http_status_code": http_status_code}
        if self.api_errors:
            details["api_errors"] = self.api_errors
        super().__init__(
            message,
            code=BillingErrorCode.ASAAS_API_ERROR,
            status_code=502,
            details=details,
        )


class SubscriptionCreationError(BillingError):
    def __init__(
        self,
        tenant_id: Any,
        customer_id: Optional[str],
        message: str = "Failed to create subscription",
    ):
        self.tenant_id = tenant_id
        self.customer_id = customer_id
        super().__init__(
            message,
            code=BillingErrorCode.SUBSCRIPTION_CREATION_ERROR,
            status_code=502,
            details={"tenant_id": str(tenant_id), "customer_id": customer_id},
        )


class SubscriptionCancellationError(BillingError):
    def __init__(
        self,
        tenant_id: Any,
        message: str = "Failed to cancel subscription",
        subscription_id: Optional[str] = None,
    ):
        self.tenant_id = tenant_id
        self.subscription_id = subscription_id
        super().__init__(
            message,
            code=BillingErrorCode.SUBSCRIPTION_CANCELLATION_ERROR,
            status_code=400,
            details={"tenant_id": str(tenant_id), "subscription_id": subscription_id},
        )


class CustomerCreationError(BillingError):
    def __init__(self, tenant_id: Any, message: str = "Failed to create customer in ASAAS"):
        self.tenant_id = tenant_id
        super().__init__(
            message,
            code=BillingErrorCode.CUSTOMER_CREATION_ERROR,
            status_code=502,
            details={"tenant_id": str(tenant_id)},
        )


class WebhookStateError(BillingError):
    """A ledger operation was requested on a row in the wrong status."""

    retryable = False

    def __init__(self, event_id: Any, status: str, message: str):
        self.event_id = event_id
        self.status = status
        super().__init__(
            message,
            code=BillingErrorCode.WEBHOOK_STATE_CONFLICT,
            status_code=409,
            details={"event_id": str(event_id), "status": status},
        )
