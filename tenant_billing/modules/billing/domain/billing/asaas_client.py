"""ASAAS API client implementation."""

from __future__ import annotations

from typing import Any, Optional, Type, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tenant_billing.modules.billing.domain.billing.asaas_dtos import (
    AsaasCancelResult,
    AsaasCustomer,
    AsaasPage,
    AsaasPayment,
    AsaasSubscription,
    CreateCustomerRequest,
    CreateSubscriptionRequest,
    ListPaymentsQuery,
    UpdateCustomerRequest,
    UpdateSubscriptionRequest,
)
from tenant_billing.modules.billing.domain.billing.errors import AsaasApiError
from tenant_billing.shared.core.config import (
    ASAAS_ENV_PRODUCTION,
    ASAAS_ENV_SANDBOX,
    get_settings,
)
from tenant_billing.shared.core.exceptions import ConfigurationError
from tenant_billing.shared.core.http import get_http_client

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=BaseModel)

ASAAS_BASE_URLS = {
    ASAAS_ENV_SANDBOX: "https://sandbox.asaas.com/api/v3",
    ASAAS_ENV_PRODUCTION: "https://api.asaas.com/v3",
}


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    logger.warning(
        "asaas_request_retrying",
        attempt=retry_state.attempt_number,
        error=str(outcome.exception()) if outcome else None,
    )


class AsaasClient:
    """
    Async wrapper for ASAAS operations.

    Uses the shared httpx client unless one is injected. Every failure,
    including timeouts and malformed responses, surfaces as `AsaasApiError`
    so the webhook ledger treats it as retryable.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        environment: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        settings = get_settings()
        api_key = api_key or settings.ASAAS_API_KEY
        if not api_key:
            raise ConfigurationError("ASAAS_API_KEY not configured")

        environment = environment or settings.ASAAS_ENVIRONMENT
        if environment not in ASAAS_BASE_URLS:
            raise ConfigurationError(f"Unknown ASAAS environment: {environment}")

        self.base_url = ASAAS_BASE_URLS[environment]
        self.environment = environment
        self.timeout = timeout or settings.ASAAS_TIMEOUT_SECONDS
        self.max_retries = max_retries or settings.ASAAS_MAX_RETRIES
        self._http_client = http_client
        self.headers: dict[str, str] = {
            "access_token": api_key,
            "Content-Type": "application/json",
        }

    async def _send(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None,
        params: dict[str, Any] | None,
    ) -> httpx.Response:
        client = self._http_client or get_http_client()
        # Only reads are safe to repeat; a retried POST could double-create.
        attempts = self.max_retries if method == "GET" else 1
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                return await client.request(
                    method,
                    f"{self.base_url}/{endpoint}",
                    headers=self.headers,
                    json=data,
                    params=params,
                    timeout=self.timeout,
                )
        raise AsaasApiError(500, f"ASAAS request not attempted: {endpoint}")

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._send(method, endpoint, data, params)
        except httpx.TimeoutException as exc:
            logger.error("asaas_api_timeout", endpoint=endpoint, error=str(exc))
            raise AsaasApiError(504, f"ASAAS request timed out: {endpoint}") from exc
        except httpx.HTTPError as exc:
            logger.error("asaas_api_error", endpoint=endpoint, error=str(exc))
            raise AsaasApiError(503, f"ASAAS request failed: {endpoint}") from exc

        if response.is_error:
            api_errors: list[dict[str, Any]] = []
            try:
                body = response.json()
                if isinstance(body, dict) and isinstance(body.get("errors"), list):
                    api_errors = body["errors"]
            except ValueError:
                pass
            logger.error(
                "asaas_api_error",
                endpoint=endpoint,
                status_code=response.status_code,
                api_errors=api_errors,
            )
            raise AsaasApiError(
                response.status_code,
                f"ASAAS API error during {method} {endpoint}",
                api_errors,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AsaasApiError(502, "Invalid ASAAS response payload") from exc
        if not isinstance(payload, dict):
            raise AsaasApiError(502, "Invalid ASAAS response payload type")
        return payload

    @staticmethod
    def _parse(model: Type[ModelT], payload: dict[str, Any], endpoint: str) -> ModelT:
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            logger.error("asaas_response_invalid", endpoint=endpoint, error=str(exc))
            raise AsaasApiError(
                502, f"Unexpected ASAAS response shape from {endpoint}"
            ) from exc

    # Customers

    async def create_customer(self, data: CreateCustomerRequest) -> AsaasCustomer:
        payload = await self._request("POST", "customers", data.to_payload())
        customer = self._parse(AsaasCustomer, payload, "customers")
        logger.info("asaas_customer_created", customer_id=customer.id)
        return customer

    async def get_customer(self, customer_id: str) -> AsaasCustomer:
        endpoint = f"customers/{customer_id}"
        return self._parse(AsaasCustomer, await self._request("GET", endpoint), endpoint)

    async def update_customer(
        self, customer_id: str, data: UpdateCustomerRequest
    ) -> AsaasCustomer:
        endpoint = f"customers/{customer_id}"
        payload = await self._request("POST", endpoint, data.to_payload())
        return self._parse(AsaasCustomer, payload, endpoint)

    async def find_customer_by_external_reference(
        self, external_reference: str
    ) -> AsaasPage[AsaasCustomer]:
        payload = await self._request(
            "GET", "customers", params={"externalReference": external_reference}
        )
        return self._parse(AsaasPage[AsaasCustomer], payload, "customers")

    # Subscriptions

    async def create_subscription(
        self, data: CreateSubscriptionRequest
    ) -> AsaasSubscription:
        payload = await self._request("POST", "subscriptions", data.to_payload())
        subscription = self._parse(AsaasSubscription, payload, "subscriptions")
        logger.info(
            "asaas_subscription_created",
            subscription_id=subscription.id,
            customer_id=subscription.customer,
        )
        return subscription

    async def get_subscription(self, subscription_id: str) -> AsaasSubscription:
        endpoint = f"subscriptions/{subscription_id}"
        return self._parse(
            AsaasSubscription, await self._request("GET", endpoint), endpoint
        )

    async def update_subscription(
        self, subscription_id: str, data: UpdateSubscriptionRequest
    ) -> AsaasSubscription:
        endpoint = f"subscriptions/{subscription_id}"
        payload = await self._request("POST", endpoint, data.to_payload())
        return self._parse(AsaasSubscription, payload, endpoint)

    async def cancel_subscription(self, subscription_id: str) -> AsaasCancelResult:
        endpoint = f"subscriptions/{subscription_id}"
        result = self._parse(
            AsaasCancelResult, await self._request("DELETE", endpoint), endpoint
        )
        logger.info(
            "asaas_subscription_canceled",
            subscription_id=subscription_id,
            deleted=result.deleted,
        )
        return result

    async def find_subscriptions_by_customer(
        self, customer_id: str
    ) -> AsaasPage[AsaasSubscription]:
        payload = await self._request(
            "GET", "subscriptions", params={"customer": customer_id}
        )
        return self._parse(AsaasPage[AsaasSubscription], payload, "subscriptions")

    # Payments

    async def list_invoices(
        self, subscription_id: str, query: Optional[ListPaymentsQuery] = None
    ) -> AsaasPage[AsaasPayment]:
        endpoint = f"subscriptions/{subscription_id}/payments"
        params = query.to_payload() if query else None
        payload = await self._request("GET", endpoint, params=params)
        return self._parse(AsaasPage[AsaasPayment], payload, endpoint)

    async def get_payment(self, payment_id: str) -> AsaasPayment:
        endpoint = f"payments/{payment_id}"
        return self._parse(AsaasPayment, await self._request("GET", endpoint), endpoint)

    async def list_payments(
        self, query: Optional[ListPaymentsQuery] = None
    ) -> AsaasPage[AsaasPayment]:
        params = query.to_payload() if query else None
        payload = await self._request("GET", "payments", params=params)
        return self._parse(AsaasPage[AsaasPayment], payload, "payments")
