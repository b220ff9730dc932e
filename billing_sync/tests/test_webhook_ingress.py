from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from billing_sync.app.billing import WebhookIngress
from billing_sync.app.billing.models import BillingProvider, SubscriptionSnapshot


def _body(event_type: str, event_id: str, payload=None) -> bytes:
    return json.dumps({"type": event_type, "id": event_id, "payload": payload or {}}).encode("utf-8")


def _subscription_payload(**overrides):
    start = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    values = dict(
        external_subscription_id="sub_ext_9",
        external_customer_id="cus_9",
        user_id="user-1",
        status="active",
        plan="PRO",
        billing_cycle="MONTHLY",
        current_period_start=start,
        current_period_end=start + timedelta(days=31),
    )
    values.update(overrides)
    return SubscriptionSnapshot(**values).model_dump(mode="json")


@pytest.fixture
def ingress(card_adapter, invoicing_adapter, reconciler) -> WebhookIngress:
    return WebhookIngress(
        adapters={
            BillingProvider.CARD_PAYMENT: card_adapter,
            BillingProvider.INVOICING: invoicing_adapter,
        },
        reconciler=reconciler,
    )


def test_signature_headers_per_provider(ingress):
    assert ingress.signature_header("stripe") == "stripe-signature"
    assert ingress.signature_header("MYOB") == "x-myob-signature"
    assert ingress.signature_header("paypal") is None


def test_unknown_provider_is_not_found(ingress):
    ack = ingress.receive("paypal", b"{}", "valid")

    assert ack.status_code == 404
    assert ack.body == {"error": "unknown_provider"}


def test_unconfigured_provider_is_unavailable(ingress, card_adapter):
    card_adapter.configured = False

    ack = ingress.receive("stripe", _body("unhandled", "evt_1"), "valid")

    assert ack.status_code == 503
    assert card_adapter.calls == []


def test_bad_signature_is_rejected_before_any_write(ingress, repository):
    body = _body("subscription.created", "evt_1", _subscription_payload())

    ack = ingress.receive("stripe", body, "forged")

    assert ack.status_code == 401
    assert ack.body == {"error": "signature_invalid"}
    assert repository.subscriptions == {}
    assert repository.processed_events == {}


def test_valid_event_is_applied_and_acknowledged(ingress, repository):
    body = _body("subscription.created", "evt_1", _subscription_payload())

    ack = ingress.receive("stripe", body, "valid")

    assert ack.status_code == 200
    assert ack.body == {"received": True, "outcome": "applied"}
    assert repository.get_subscription_by_external_id("sub_ext_9") is not None


def test_redelivery_is_acknowledged_as_duplicate(ingress, notifier):
    body = _body("subscription.created", "evt_1", _subscription_payload())

    ingress.receive("stripe", body, "valid")
    ack = ingress.receive("stripe", body, "valid")

    assert ack.status_code == 200
    assert ack.body["outcome"] == "duplicate"
    assert len(notifier.started) == 1


def test_unhandled_event_type_is_acknowledged(ingress, repository):
    ack = ingress.receive("stripe", _body("unhandled", "evt_2"), "valid")

    assert ack.status_code == 200
    assert ack.body["outcome"] == "unhandled"
    assert repository.processed_events[(BillingProvider.CARD_PAYMENT, "evt_2")] == "unhandled"


def test_unprocessable_event_is_acknowledged_as_failed(ingress, repository):
    payload = {"external_invoice_id": "in_9", "external_subscription_id": "sub_unknown"}

    ack = ingress.receive("stripe", _body("invoice.paid", "evt_3", payload), "valid")

    assert ack.status_code == 200
    assert ack.body == {"received": True, "outcome": "failed"}
    assert repository.processed_events[(BillingProvider.CARD_PAYMENT, "evt_3")] == "failed"


def test_ledger_outage_asks_provider_to_redeliver(ingress, repository, sleeps):
    repository.outages = 5
    body = _body("subscription.created", "evt_4", _subscription_payload())

    ack = ingress.receive("stripe", body, "valid")

    assert ack.status_code == 500
    assert ack.body == {"error": "ledger_unavailable"}
    assert sleeps == [0.5, 1.0]
    assert repository.processed_events == {}

    repository.outages = 0
    retried = ingress.receive("stripe", body, "valid")
    assert retried.status_code == 200
    assert retried.body["outcome"] == "applied"


def test_invoicing_webhook_routes_to_invoicing_adapter(ingress, card_adapter, invoicing_adapter):
    ingress.receive("myob", _body("unhandled", "evt_5"), "valid")

    assert invoicing_adapter.call_names() == ["verify_webhook"]
    assert card_adapter.calls == []


def test_out_of_order_event_asks_provider_to_redeliver(ingress, repository):
    payload = {"external_invoice_id": "in_9", "external_subscription_id": "sub_ext_9", "user_id": "user-1"}
    body = _body("invoice.paid", "evt_6", payload)

    ack = ingress.receive("stripe", body, "valid")

    assert ack.status_code == 500
    assert ack.body == {"error": "event_out_of_order"}
    assert repository.processed_events == {}

    ingress.receive("stripe", _body("subscription.created", "evt_7", _subscription_payload()), "valid")
    retried = ingress.receive("stripe", body, "valid")

    assert retried.status_code == 200
    assert retried.body["outcome"] == "applied"


def test_event_without_id_is_a_bad_request(ingress, repository):
    ack = ingress.receive("myob", _body("invoice.paid", ""), "valid")

    assert ack.status_code == 400
    assert ack.body == {"error": "invalid_input"}
    assert repository.processed_events == {}
