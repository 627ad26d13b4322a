from datetime import date
from uuid import uuid4

import pytest
from pydantic import ValidationError

from tenant_billing.modules.billing.domain.billing.asaas_dtos import (
    AsaasPayment,
    CreateCustomerRequest,
    CreateSubscriptionRequest,
    ListPaymentsQuery,
    to_invoice,
)
from tenant_billing.modules.billing.domain.billing.asaas_events import (
    REQUIRED_ASAAS_EVENTS,
    AsaasEventType,
    AsaasPaymentPayload,
    AsaasWebhookEvent,
    is_asaas_event_type,
    is_payment_event,
    is_subscription_event,
    parse_event_type,
)
from tenant_billing.modules.billing.domain.billing.billing_plan import (
    BillingCycle,
    BillingPlan,
    create_default_subscription_metadata,
    project_next_billing_date,
)


class TestEvents:
    def test_event_classification(self):
        assert is_payment_event(AsaasEventType.PAYMENT_OVERDUE)
        assert is_subscription_event(AsaasEventType.SUBSCRIPTION_RENEWED)
        assert not is_payment_event(AsaasEventType.TRANSFER_DONE)
        assert not is_subscription_event(AsaasEventType.INVOICE_CREATED)

    def test_parse_event_type(self):
        assert parse_event_type("PAYMENT_RECEIVED") == AsaasEventType.PAYMENT_RECEIVED
        assert parse_event_type("payment_received") is None
        assert is_asaas_event_type("SUBSCRIPTION_CANCELED") is True
        assert is_asaas_event_type(None) is False

    def test_required_events_are_handled_types(self):
        assert AsaasEventType.PAYMENT_OVERDUE in REQUIRED_ASAAS_EVENTS
        assert AsaasEventType.TRANSFER_DONE not in REQUIRED_ASAAS_EVENTS

    def test_envelope_keeps_unknown_event_names(self):
        event = AsaasWebhookEvent.model_validate(
            {"id": "evt_1", "event": "SOMETHING_NEW", "dateCreated": "2026-03-20"}
        )
        assert event.event == "SOMETHING_NEW"
        assert event.payment is None

    def test_envelope_requires_event(self):
        with pytest.raises(ValidationError):
            AsaasWebhookEvent.model_validate({"id": "evt_1"})


class TestDateCoercion:
    def test_payment_dates_accept_dates_and_timestamps(self):
        payment = AsaasPaymentPayload.model_validate(
            {
                "id": "pay_1",
                "customer": "cus_1",
                "dueDate": "2026-03-04",
                "confirmedDate": "2026-03-05 14:22:10",
                "paymentDate": "",
                "unknownField": 1,
            }
        )

        assert payment.due_date == date(2026, 3, 4)
        assert payment.confirmed_date == date(2026, 3, 5)
        assert payment.payment_date is None

    def test_garbage_date_is_rejected(self):
        with pytest.raises(ValidationError):
            AsaasPaymentPayload.model_validate(
                {"id": "pay_1", "customer": "cus_1", "dueDate": "yesterday"}
            )


class TestRequests:
    def test_customer_request_normalizes_document(self):
        request = CreateCustomerRequest(
            name="  Acme  ", email="a@b.co", cpf_cnpj="123.456.789-09"
        )
        payload = request.to_payload()

        assert payload == {"name": "Acme", "email": "a@b.co", "cpfCnpj": "12345678909"}

    @pytest.mark.parametrize(
        "field, value",
        [("name", "   "), ("email", "nope"), ("cpf_cnpj", "1234")],
    )
    def test_customer_request_validation(self, field, value):
        data = {"name": "Acme", "email": "a@b.co", "cpf_cnpj": "12345678909"}
        data[field] = value
        with pytest.raises(ValidationError):
            CreateCustomerRequest(**data)

    def test_subscription_request_rejects_unknown_billing_type(self):
        with pytest.raises(ValidationError):
            CreateSubscriptionRequest(
                customer="cus_1",
                billing_type="CASH",
                value=10.0,
                next_due_date=date(2026, 4, 1),
                cycle=BillingCycle.MONTHLY,
            )

    def test_list_query_uses_bracket_filters(self):
        query = ListPaymentsQuery(
            due_date_start=date(2026, 1, 1), due_date_end=date(2026, 1, 31)
        )
        assert query.to_payload() == {
            "dueDate[ge]": "2026-01-01",
            "dueDate[le]": "2026-01-31",
        }


class TestInvoiceAndPlan:
    def test_to_invoice_rounds_cents(self):
        tenant_id = uuid4()
        payment = AsaasPayment.model_validate(
            {
                "id": "pay_1",
                "customer": "cus_1",
                "value": 19.99,
                "netValue": 18.5,
                "dateCreated": "2026-03-01",
                "invoiceUrl": "https://asaas.test/i/pay_1",
            }
        )

        invoice = to_invoice(payment, tenant_id, currency="USD")

        assert invoice.amount_in_cents == 1999
        assert invoice.net_amount_in_cents == 1850
        assert invoice.currency == "USD"
        assert invoice.created_at == date(2026, 3, 1)
        assert invoice.invoice_url == "https://asaas.test/i/pay_1"

    def test_plan_metadata_defaults(self, plan: BillingPlan):
        metadata = create_default_subscription_metadata(
            plan, next_billing_date=date(2026, 4, 1)
        )

        assert metadata.plan_id == "starter"
        assert metadata.price_in_cents == 9900
        assert metadata.trial_end_date is None
        assert metadata.days_overdue is None
        assert plan.price == 99.0

    def test_plan_is_immutable(self, plan: BillingPlan):
        with pytest.raises(ValidationError):
            plan.trial_days = 0

    def test_project_next_billing_date(self):
        assert project_next_billing_date(date(2026, 1, 1), BillingCycle.QUARTERLY) == date(
            2026, 4, 1
        )
