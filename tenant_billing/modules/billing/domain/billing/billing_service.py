"""
Billing service facade.

Customer, subscription and invoice operations for one tenant, composed from
the ASAAS client, the tenant billing store and `SubscriptionService`.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

import structlog
from pydantic import BaseModel

from tenant_billing.modules.billing.domain.billing.asaas_client import AsaasClient
from tenant_billing.modules.billing.domain.billing.asaas_dtos import (
    AsaasCustomer,
    CreateCustomerRequest,
    Invoice,
    ListPaymentsQuery,
    UpdateCustomerRequest,
    to_invoice,
)
from tenant_billing.modules.billing.domain.billing.billing_plan import (
    BillingPlan,
    TenantBillingRecord,
)
from tenant_billing.modules.billing.domain.billing.billing_status import (
    BillingStatus,
    has_full_access,
    has_limited_access,
)
from tenant_billing.modules.billing.domain.billing.errors import CustomerCreationError
from tenant_billing.modules.billing.domain.billing.store import TenantBillingStore
from tenant_billing.modules.billing.domain.billing.subscription_service import (
    InitializeSubscriptionResult,
    SubscriptionService,
)
from tenant_billing.shared.core.config import get_settings

logger = structlog.get_logger()


class BillableTenant(BaseModel):
    """Tenant profile fields needed to register an ASAAS customer."""

    id: UUID
    name: str
    email: str
    cpf_cnpj: str
    phone: Optional[str] = None
    address: Optional[str] = None
    address_number: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    external_customer_id: Optional[str] = None


class CreateCustomerResult(BaseModel):
    customer_id: str
    customer: AsaasCustomer
    existing: bool = False


class BillingService:
    def __init__(
        self,
        asaas_client: AsaasClient,
        store: TenantBillingStore,
        subscription_service: Optional[SubscriptionService] = None,
        currency: Optional[str] = None,
    ):
        self.asaas_client = asaas_client
        self.store = store
        self.subscription_service = subscription_service or SubscriptionService(
            asaas_client, store
        )
        self.currency = currency or get_settings().BILLING_CURRENCY

    # Customers

    async def create_customer_for_tenant(
        self, tenant: BillableTenant
    ) -> CreateCustomerResult:
        """
        Return the tenant's ASAAS customer, creating it only when neither the
        stored id nor an `externalReference` lookup finds one.

        Raises:
            CustomerCreationError: any failure along the way.
        """
        tenant_id = str(tenant.id)
        logger.info("billing_customer_create_started", tenant_id=tenant_id)
        try:
            if tenant.external_customer_id:
                customer = await self.asaas_client.get_customer(
                    tenant.external_customer_id
                )
                logger.info(
                    "billing_customer_reused",
                    tenant_id=tenant_id,
                    customer_id=customer.id,
                )
                return CreateCustomerResult(
                    customer_id=customer.id, customer=customer, existing=True
                )

            page = await self.asaas_client.find_customer_by_external_reference(
                tenant_id
            )
            if page.total_count > 0 and page.data:
                customer = page.data[0]
                await self.store.update(tenant.id, external_customer_id=customer.id)
                logger.info(
                    "billing_customer_linked",
                    tenant_id=tenant_id,
                    customer_id=customer.id,
                )
                return CreateCustomerResult(
                    customer_id=customer.id, customer=customer, existing=True
                )

            customer = await self.asaas_client.create_customer(
                CreateCustomerRequest(
                    name=tenant.name,
                    email=tenant.email,
                    cpf_cnpj=tenant.cpf_cnpj,
                    external_reference=tenant_id,
                    phone=tenant.phone or None,
                    address=tenant.address or None,
                    address_number=tenant.address_number or None,
                    postal_code=tenant.postal_code or None,
                    city=tenant.city or None,
                    province=tenant.province or None,
                )
            )
            await self.store.update(tenant.id, external_customer_id=customer.id)
        except CustomerCreationError:
            raise
        except Exception as exc:
            logger.error(
                "billing_customer_create_failed", tenant_id=tenant_id, error=str(exc)
            )
            raise CustomerCreationError(
                tenant.id, f"Failed to create customer: {exc}"
            ) from exc

        logger.info(
            "billing_customer_created", tenant_id=tenant_id, customer_id=customer.id
        )
        return CreateCustomerResult(customer_id=customer.id, customer=customer)

    async def update_customer(
        self, tenant_id: UUID, customer_id: str, data: UpdateCustomerRequest
    ) -> AsaasCustomer:
        logger.info(
            "billing_customer_update_started",
            tenant_id=str(tenant_id),
            customer_id=customer_id,
        )
        customer = await self.asaas_client.update_customer(customer_id, data)
        logger.info(
            "billing_customer_updated",
            tenant_id=str(tenant_id),
            customer_id=customer_id,
        )
        return customer

    async def get_customer(self, customer_id: str) -> AsaasCustomer:
        return await self.asaas_client.get_customer(customer_id)

    # Subscriptions

    async def initialize_subscription(
        self,
        tenant: BillableTenant,
        plan: BillingPlan,
        billing_type: Optional[str] = None,
        start_with_trial: Optional[bool] = None,
    ) -> InitializeSubscriptionResult:
        """Ensure the customer exists, then create and bind the subscription."""
        customer_id = tenant.external_customer_id
        if not customer_id:
            customer_id = (await self.create_customer_for_tenant(tenant)).customer_id

        return await self.subscription_service.initialize_subscription(
            tenant.id,
            customer_id,
            plan,
            billing_type=billing_type,
            start_with_trial=(
                start_with_trial if start_with_trial is not None else plan.trial_days > 0
            ),
        )

    async def cancel_subscription(self, tenant_id: UUID) -> TenantBillingRecord:
        return await self.subscription_service.cancel_subscription(tenant_id)

    async def sync_subscription_status(self, tenant_id: UUID) -> TenantBillingRecord:
        return await self.subscription_service.sync_subscription_status(tenant_id)

    # Invoices

    async def list_invoices(
        self,
        tenant_id: UUID,
        subscription_id: str,
        query: Optional[ListPaymentsQuery] = None,
    ) -> list[Invoice]:
        page = await self.asaas_client.list_invoices(subscription_id, query)
        invoices = [to_invoice(payment, tenant_id, self.currency) for payment in page.data]
        logger.info(
            "billing_invoices_listed", tenant_id=str(tenant_id), count=len(invoices)
        )
        return invoices

    async def get_invoice(self, tenant_id: UUID, payment_id: str) -> Invoice:
        payment = await self.asaas_client.get_payment(payment_id)
        return to_invoice(payment, tenant_id, self.currency)

    # Standing

    async def get_tenant_billing(
        self, tenant_id: UUID
    ) -> Optional[TenantBillingRecord]:
        return await self.store.get(tenant_id)

    async def is_tenant_in_good_standing(self, tenant_id: UUID) -> bool:
        record = await self.store.get(tenant_id)
        return record is not None and has_full_access(record.billing_status)

    async def has_tenant_limited_access(self, tenant_id: UUID) -> bool:
        record = await self.store.get(tenant_id)
        return record is not None and has_limited_access(
            BillingStatus(record.billing_status)
        )
