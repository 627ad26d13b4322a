"""Request/response shapes for the ASAAS REST API and the local Invoice view."""

from __future__ import annotations

import re
from datetime import date
from typing import Any, Generic, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenant_billing.modules.billing.domain.billing.asaas_events import (
    AsaasDate,
    AsaasPaymentPayload,
    AsaasSubscriptionPayload,
)
from tenant_billing.modules.billing.domain.billing.billing_plan import BillingCycle

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ASAAS_BILLING_TYPES = frozenset({"BOLETO", "CREDIT_CARD", "PIX", "UNDEFINED"})

T = TypeVar("T")


class _AsaasRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CreateCustomerRequest(_AsaasRequest):
    name: str
    email: str
    cpf_cnpj: str = Field(alias="cpfCnpj")
    phone: Optional[str] = None
    mobile_phone: Optional[str] = Field(default=None, alias="mobilePhone")
    postal_code: Optional[str] = Field(default=None, alias="postalCode")
    address: Optional[str] = None
    address_number: Optional[str] = Field(default=None, alias="addressNumber")
    complement: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    external_reference: Optional[str] = Field(default=None, alias="externalReference")
    notification_disabled: Optional[bool] = Field(
        default=None, alias="notificationDisabled"
    )
    observations: Optional[str] = None
    company: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("name is required")
        return value.strip()

    @field_validator("email")
    @classmethod
    def _email_format(cls, value: str) -> str:
        if not _EMAIL_RE.match(value or ""):
            raise ValueError("email is invalid")
        return value

    @field_validator("cpf_cnpj")
    @classmethod
    def _cpf_cnpj_format(cls, value: str) -> str:
        # CPF has 11 digits, CNPJ 14; formatting characters are dropped.
        digits = re.sub(r"\D", "", value or "")
        if len(digits) not in (11, 14):
            raise ValueError("cpfCnpj is invalid")
        return digits


class UpdateCustomerRequest(_AsaasRequest):
    name: Optional[str] = None
    email: Optional[str] = None
    cpf_cnpj: Optional[str] = Field(default=None, alias="cpfCnpj")
    phone: Optional[str] = None
    mobile_phone: Optional[str] = Field(default=None, alias="mobilePhone")
    postal_code: Optional[str] = Field(default=None, alias="postalCode")
    address: Optional[str] = None
    address_number: Optional[str] = Field(default=None, alias="addressNumber")
    complement: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    external_reference: Optional[str] = Field(default=None, alias="externalReference")
    notification_disabled: Optional[bool] = Field(
        default=None, alias="notificationDisabled"
    )
    observations: Optional[str] = None
    company: Optional[str] = None


class AsaasCustomer(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    cpf_cnpj: Optional[str] = Field(default=None, alias="cpfCnpj")
    external_reference: Optional[str] = Field(default=None, alias="externalReference")
    date_created: AsaasDate = Field(default=None, alias="dateCreated")
    deleted: bool = False


class CreateSubscriptionRequest(_AsaasRequest):
    customer: str
    billing_type: str = Field(alias="billingType")
    value: float
    next_due_date: date = Field(alias="nextDueDate")
    cycle: BillingCycle
    description: Optional[str] = None
    external_reference: Optional[str] = Field(default=None, alias="externalReference")
    end_date: AsaasDate = Field(default=None, alias="endDate")
    max_payments: Optional[int] = Field(default=None, alias="maxPayments")

    @field_validator("billing_type")
    @classmethod
    def _known_billing_type(cls, value: str) -> str:
        if value not in ASAAS_BILLING_TYPES:
            raise ValueError(f"Unsupported billing type: {value}")
        return value


class UpdateSubscriptionRequest(_AsaasRequest):
    billing_type: Optional[str] = Field(default=None, alias="billingType")
    value: Optional[float] = None
    cycle: Optional[BillingCycle] = None
    next_due_date: AsaasDate = Field(default=None, alias="nextDueDate")
    description: Optional[str] = None
    external_reference: Optional[str] = Field(default=None, alias="externalReference")
    update_pending_payments: Optional[bool] = Field(
        default=None, alias="updatePendingPayments"
    )


class AsaasSubscription(AsaasSubscriptionPayload):
    date_created: AsaasDate = Field(default=None, alias="dateCreated")


class AsaasPayment(AsaasPaymentPayload):
    date_created: AsaasDate = Field(default=None, alias="dateCreated")


class AsaasCancelResult(BaseModel):
    deleted: bool
    id: str


class AsaasPage(BaseModel, Generic[T]):
    """Paginated list envelope (`object: "list"`)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    has_more: bool = Field(default=False, alias="hasMore")
    total_count: int = Field(default=0, alias="totalCount")
    limit: int = 10
    offset: int = 0
    data: list[T] = Field(default_factory=list)


class ListPaymentsQuery(_AsaasRequest):
    subscription: Optional[str] = None
    customer: Optional[str] = None
    status: Optional[str] = None
    due_date_start: AsaasDate = Field(default=None, alias="dueDate[ge]")
    due_date_end: AsaasDate = Field(default=None, alias="dueDate[le]")
    payment_date_start: AsaasDate = Field(default=None, alias="paymentDate[ge]")
    payment_date_end: AsaasDate = Field(default=None, alias="paymentDate[le]")
    external_reference: Optional[str] = Field(default=None, alias="externalReference")
    offset: Optional[int] = None
    limit: Optional[int] = None


class Invoice(BaseModel):
    """A tenant-facing invoice, normalized from an ASAAS payment."""

    id: str
    tenant_id: UUID
    customer_id: str
    subscription_id: Optional[str] = None
    amount_in_cents: int
    net_amount_in_cents: int
    currency: str = "BRL"
    status: Optional[str] = None
    due_date: Optional[date] = None
    payment_date: Optional[date] = None
    invoice_url: Optional[str] = None
    bank_slip_url: Optional[str] = None
    external_reference: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[date] = None
    confirmed_at: Optional[date] = None
    credit_date: Optional[date] = None


def to_invoice(payment: AsaasPayment, tenant_id: UUID, currency: str = "BRL") -> Invoice:
    net_value = payment.net_value if payment.net_value is not None else payment.value
    return Invoice(
        id=payment.id,
        tenant_id=tenant_id,
        customer_id=payment.customer,
        subscription_id=payment.subscription,
        amount_in_cents=round(payment.value * 100),
        net_amount_in_cents=round(net_value * 100),
        currency=currency,
        status=payment.status,
        due_date=payment.due_date,
        payment_date=payment.payment_date,
        invoice_url=payment.invoice_url,
        bank_slip_url=payment.bank_slip_url,
        external_reference=payment.external_reference,
        description=payment.description,
        created_at=payment.date_created,
        confirmed_at=payment.confirmed_date,
        credit_date=payment.credit_date,
    )
