from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List, Tuple

import pytest
import stripe

from billing_sync.app.billing.exceptions import (
    InvalidInput,
    InvalidItem,
    InvalidState,
    NotFound,
    ProviderNotConfigured,
    ProviderUnavailable,
    SignatureInvalid,
)
from billing_sync.app.billing.models import (
    BillingCycle,
    CancellationMode,
    CheckoutSnapshot,
    ExternalEventType,
    InvoiceSnapshot,
    ItemSpec,
    PackageType,
    PaymentSnapshot,
    PaymentStatus,
    PaymentType,
    PlanType,
    SubscriptionSnapshot,
)
from billing_sync.app.billing.stripe_adapter import StripeAdapter
from billing_sync.config import load_billing_config

START = 1709294400  # 2024-03-01 12:00 UTC
END = 1711972800  # 2024-04-01 12:00 UTC


class RecordingStripeClient:
    """Stand-in for ``stripe.StripeClient`` exposing the v1 services used."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, tuple, Dict[str, Any]]] = []
        self.results: Dict[str, Any] = {
            "customers.list": SimpleNamespace(data=[]),
            "customers.create": SimpleNamespace(id="cus_new"),
            "checkout.sessions.create": SimpleNamespace(
                id="cs_test_abc", url="https://checkout.stripe.test/cs_test_abc", expires_at=END
            ),
        }
        self.v1 = SimpleNamespace(
            customers=self._service("customers", "list", "create"),
            checkout=SimpleNamespace(sessions=self._service("checkout.sessions", "create", "retrieve")),
            invoice_items=self._service("invoice_items", "create"),
            invoices=self._service("invoices", "create", "finalize_invoice", "retrieve"),
            subscriptions=self._service("subscriptions", "cancel", "update", "retrieve"),
            payment_intents=self._service("payment_intents", "retrieve"),
            billing_portal=SimpleNamespace(sessions=self._service("billing_portal.sessions", "create")),
        )

    def _service(self, prefix: str, *methods: str) -> SimpleNamespace:
        return SimpleNamespace(**{method: self._method(f"{prefix}.{method}") for method in methods})

    def _method(self, name: str):
        def call(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            result = self.results.get(name)
            if isinstance(result, Exception):
                raise result
            return result

        return call

    def names(self) -> List[str]:
        return [name for name, _, _ in self.calls]


def _sign(payload: str, secret: str = "whsec_test", timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


def _event(event_type: str, obj: dict, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "type": event_type, "created": START, "data": {"object": obj}}


@pytest.fixture
def client() -> RecordingStripeClient:
    return RecordingStripeClient()


@pytest.fixture
def adapter(billing_config, client) -> StripeAdapter:
    return StripeAdapter(billing_config, client=client)


def test_unconfigured_adapter():
    adapter = StripeAdapter(load_billing_config({}))

    assert adapter.is_configured() is False
    with pytest.raises(ProviderNotConfigured):
        adapter.verify_webhook(b"{}", "t=1,v1=abc")
    with pytest.raises(ProviderNotConfigured):
        adapter.cancel_subscription("sub_ext_1", CancellationMode.AT_PERIOD_END)


def test_building_adapter_leaves_global_http_client_alone(billing_config, monkeypatch):
    sentinel = object()
    monkeypatch.setattr(stripe, "default_http_client", sentinel)

    adapter = StripeAdapter(billing_config)
    services = adapter._stripe

    assert services is adapter._client.v1
    assert stripe.default_http_client is sentinel


def test_package_checkout_creates_payment_session(adapter, client, user):
    session = adapter.create_checkout(
        user, ItemSpec(payment_type=PaymentType.ONE_TIME, package_type=PackageType.PROFESSIONAL, job_id="job-1")
    )

    assert session.external_session_id == "cs_test_abc"
    assert session.checkout_url.endswith("cs_test_abc")
    assert session.expires_at == datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)

    assert client.names() == ["customers.list", "customers.create", "checkout.sessions.create"]
    assert client.calls[0][2]["params"] == {"email": "partner@example.com", "limit": 1}
    params = client.calls[-1][2]["params"]
    assert params["mode"] == "payment"
    assert params["customer"] == "cus_new"
    assert params["line_items"] == [{"price": "price_professional", "quantity": 1}]
    assert params["metadata"] == {
        "userId": "user-1",
        "jobId": "job-1",
        "type": "one_time",
        "packageType": "PROFESSIONAL",
    }
    assert params["success_url"].startswith("https://portal.test/checkout/success")
    assert params["cancel_url"] == "https://portal.test/pricing"


def test_subscription_checkout_tags_subscription_with_user(adapter, client, user):
    adapter.create_checkout(
        user,
        ItemSpec(payment_type=PaymentType.SUBSCRIPTION, plan=PlanType.PRO, billing_cycle=BillingCycle.MONTHLY),
    )

    params = client.calls[-1][2]["params"]
    assert params["mode"] == "subscription"
    assert params["line_items"][0]["price"] == "price_pro_monthly"
    assert params["subscription_data"] == {"metadata": {"userId": "user-1"}}
    assert params["metadata"]["planType"] == "PRO"


def test_checkout_without_configured_price_fails_before_calling_stripe(adapter, client, user):
    with pytest.raises(InvalidItem):
        adapter.create_checkout(user, ItemSpec(payment_type=PaymentType.ONE_TIME, package_type=PackageType.BASIC))

    assert client.calls == []


def test_existing_customer_is_reused(adapter, client, user):
    client.results["customers.list"] = SimpleNamespace(data=[SimpleNamespace(id="cus_existing")])

    adapter.create_checkout(
        user, ItemSpec(payment_type=PaymentType.ONE_TIME, package_type=PackageType.PROFESSIONAL)
    )

    assert client.calls[-1][2]["params"]["customer"] == "cus_existing"
    assert "customers.create" not in client.names()


@pytest.mark.parametrize(
    "error, expected",
    [
        (stripe.APIConnectionError("connection reset"), ProviderUnavailable),
        (stripe.RateLimitError("slow down"), ProviderUnavailable),
        (stripe.InvalidRequestError("No such subscription", "id", http_status=404), NotFound),
        (stripe.InvalidRequestError("Bad parameter", "cancel_at_period_end", http_status=400), InvalidInput),
        (stripe.AuthenticationError("Invalid API key"), ProviderNotConfigured),
        (stripe.APIError("Internal error"), ProviderUnavailable),
    ],
)
def test_stripe_errors_are_mapped(adapter, client, error, expected):
    client.results["subscriptions.update"] = error

    with pytest.raises(expected):
        adapter.cancel_subscription("sub_ext_1", CancellationMode.AT_PERIOD_END)


def test_cancel_at_period_end_sets_flag(adapter, client):
    adapter.cancel_subscription("sub_ext_1", CancellationMode.AT_PERIOD_END)

    name, args, kwargs = client.calls[-1]
    assert name == "subscriptions.update"
    assert args == ("sub_ext_1",)
    assert kwargs["params"] == {"cancel_at_period_end": True}


def test_immediate_cancel_ends_subscription(adapter, client):
    adapter.cancel_subscription("sub_ext_1", CancellationMode.IMMEDIATE)

    assert client.calls == [("subscriptions.cancel", ("sub_ext_1",), {})]


def test_resume_requires_pending_cancellation(adapter, client):
    client.results["subscriptions.retrieve"] = SimpleNamespace(status="active", cancel_at_period_end=False)

    with pytest.raises(InvalidState):
        adapter.resume_subscription("sub_ext_1")

    assert client.names() == ["subscriptions.retrieve"]


def test_resume_clears_pending_cancellation(adapter, client):
    client.results["subscriptions.retrieve"] = SimpleNamespace(status="active", cancel_at_period_end=True)

    adapter.resume_subscription("sub_ext_1")

    assert client.calls[-1] == ("subscriptions.update", ("sub_ext_1",), {"params": {"cancel_at_period_end": False}})


def test_verify_webhook_normalizes_subscription_update(adapter):
    body = _event(
        "customer.subscription.updated",
        {
            "id": "sub_ext_1",
            "customer": "cus_1",
            "status": "active",
            "cancel_at_period_end": True,
            "metadata": {"userId": "user-1"},
            "items": {
                "data": [
                    {
                        "price": {"id": "price_pro_monthly", "recurring": {"interval": "month"}},
                        "current_period_start": START,
                        "current_period_end": END,
                    }
                ]
            },
        },
    )
    payload = json.dumps(body)

    event = adapter.verify_webhook(payload.encode("utf-8"), _sign(payload))

    assert event.event_type == ExternalEventType.SUBSCRIPTION_UPDATED
    assert event.external_event_id == "evt_1"
    assert event.raw_type == "customer.subscription.updated"
    assert event.occurred_at == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    snapshot = SubscriptionSnapshot.model_validate(event.payload)
    assert snapshot.plan == PlanType.PRO
    assert snapshot.billing_cycle == BillingCycle.MONTHLY
    assert snapshot.user_id == "user-1"
    assert snapshot.cancel_at_period_end is True
    assert snapshot.current_period_end == datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)


def test_verify_webhook_rejects_tampered_body(adapter):
    payload = json.dumps(_event("invoice.paid", {"id": "in_1"}))
    header = _sign(payload)
    tampered = payload.replace("in_1", "in_2")

    with pytest.raises(SignatureInvalid):
        adapter.verify_webhook(tampered.encode("utf-8"), header)


def test_verify_webhook_rejects_wrong_secret(adapter):
    payload = json.dumps(_event("invoice.paid", {"id": "in_1"}))

    with pytest.raises(SignatureInvalid):
        adapter.verify_webhook(payload.encode("utf-8"), _sign(payload, secret="whsec_other"))


def test_verify_webhook_rejects_stale_timestamp(adapter):
    payload = json.dumps(_event("invoice.paid", {"id": "in_1"}))

    with pytest.raises(SignatureInvalid):
        adapter.verify_webhook(payload.encode("utf-8"), _sign(payload, timestamp=int(time.time()) - 3600))


def test_verify_webhook_requires_header(adapter):
    with pytest.raises(SignatureInvalid):
        adapter.verify_webhook(b"{}", None)


def test_checkout_completed_is_normalized(adapter):
    event = adapter.normalize_event(
        _event(
            "checkout.session.completed",
            {
                "id": "cs_test_1",
                "mode": "payment",
                "amount_total": 19900,
                "currency": "nzd",
                "payment_intent": "pi_1",
                "metadata": {"userId": "user-1", "type": "one_time", "packageType": "PROFESSIONAL", "jobId": ""},
            },
        )
    )

    snapshot = CheckoutSnapshot.model_validate(event.payload)
    assert event.event_type == ExternalEventType.CHECKOUT_COMPLETED
    assert snapshot.payment_type == PaymentType.ONE_TIME
    assert snapshot.package_type == PackageType.PROFESSIONAL
    assert snapshot.amount_total == Decimal("199.00")
    assert snapshot.currency == "NZD"
    assert snapshot.external_payment_ref == "pi_1"
    assert snapshot.job_id is None


def test_invoice_paid_reads_subscription_from_parent_details(adapter):
    event = adapter.normalize_event(
        _event(
            "invoice.paid",
            {
                "id": "in_1",
                "number": "ABC-0001",
                "amount_paid": 19900,
                "amount_due": 19900,
                "currency": "nzd",
                "parent": {
                    "subscription_details": {"subscription": "sub_ext_1", "metadata": {"userId": "user-1"}}
                },
                "lines": {"data": [{"period": {"start": START, "end": END}}]},
            },
        )
    )

    snapshot = InvoiceSnapshot.model_validate(event.payload)
    assert event.event_type == ExternalEventType.INVOICE_PAID
    assert snapshot.external_subscription_id == "sub_ext_1"
    assert snapshot.user_id == "user-1"
    assert snapshot.amount_paid == Decimal("199.00")
    assert snapshot.period_start == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_refund_references_payment_intent(adapter):
    event = adapter.normalize_event(
        _event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_1", "amount_refunded": 9900})
    )

    snapshot = PaymentSnapshot.model_validate(event.payload)
    assert event.event_type == ExternalEventType.PAYMENT_REFUNDED
    assert snapshot.external_ref == "pi_1"
    assert snapshot.status == PaymentStatus.REFUNDED
    assert snapshot.amount == Decimal("99.00")


def test_unknown_event_type_is_unhandled(adapter):
    event = adapter.normalize_event(_event("customer.created", {"id": "cus_1"}))

    assert event.event_type == ExternalEventType.UNHANDLED
    assert event.raw_type == "customer.created"
    assert event.payload == {}


def test_fetch_status_of_paid_checkout(adapter, client):
    client.results["checkout.sessions.retrieve"] = SimpleNamespace(
        status="complete", payment_status="paid", amount_total=34900
    )

    status = adapter.fetch_payment_status("cs_test_1")

    assert status.status == PaymentStatus.PAID
    assert status.amount_paid == Decimal("349.00")


def test_fetch_status_of_open_invoice(adapter, client):
    client.results["invoices.retrieve"] = SimpleNamespace(
        status="open", amount_paid=0, amount_remaining=19900
    )

    status = adapter.fetch_payment_status("in_1")

    assert status.status == PaymentStatus.PENDING
    assert status.balance_due == Decimal("199.00")


def test_fetch_status_rejects_unknown_reference(adapter):
    with pytest.raises(InvalidInput):
        adapter.fetch_payment_status("inv-uid-1")


def test_event_without_id_is_rejected(adapter):
    payload = json.dumps({"type": "customer.created", "created": START, "data": {"object": {}}})

    with pytest.raises(InvalidInput):
        adapter.verify_webhook(payload.encode("utf-8"), _sign(payload))


def test_event_that_is_not_an_object_is_rejected(adapter):
    payload = json.dumps(["evt_1"])

    with pytest.raises(InvalidInput):
        adapter.verify_webhook(payload.encode("utf-8"), _sign(payload))
