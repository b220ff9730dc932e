"""Card-payment adapter backed by the Stripe SDK."""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping, Optional

import stripe

from ...config import BillingConfig
from .adapters import from_minor_units, from_timestamp, to_minor_units
from .catalog import (
    get_package_definition,
    get_plan_definition,
    parse_billing_cycle,
    plan_for_price_id,
)
from .exceptions import (
    InvalidInput,
    InvalidItem,
    InvalidState,
    NotFound,
    ProviderNotConfigured,
    ProviderUnavailable,
    SignatureInvalid,
)
from .models import (
    BillingCycle,
    BillingProvider,
    BillingUser,
    CancellationMode,
    CheckoutSession,
    CheckoutSnapshot,
    CheckoutStatus,
    ExternalEvent,
    ExternalEventType,
    InvoiceResult,
    InvoiceSnapshot,
    ItemSpec,
    PackageType,
    PaymentSnapshot,
    PaymentStatus,
    PaymentType,
    PlanType,
    ProviderPaymentStatus,
    SubscriptionSnapshot,
)

logger = logging.getLogger("billing")

_EVENT_TYPES: Dict[str, ExternalEventType] = {
    "checkout.session.completed": ExternalEventType.CHECKOUT_COMPLETED,
    "checkout.session.expired": ExternalEventType.CHECKOUT_EXPIRED,
    "customer.subscription.created": ExternalEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": ExternalEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": ExternalEventType.SUBSCRIPTION_DELETED,
    "invoice.paid": ExternalEventType.INVOICE_PAID,
    "invoice.payment_failed": ExternalEventType.INVOICE_PAYMENT_FAILED,
    "payment_intent.succeeded": ExternalEventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": ExternalEventType.PAYMENT_FAILED,
    "charge.refunded": ExternalEventType.PAYMENT_REFUNDED,
}

INVOICE_DUE_DAYS = 14


class StripeAdapter:
    """Creates checkout sessions and normalizes Stripe webhooks."""

    provider = BillingProvider.CARD_PAYMENT

    def __init__(self, config: BillingConfig, *, client: Optional[stripe.StripeClient] = None) -> None:
        self._config = config
        self._client = client

    def is_configured(self) -> bool:
        return self._config.is_stripe_configured

    @property
    def _stripe(self) -> Any:
        """V1 services of this adapter's own client, built on first use."""

        if self._client is None:
            if not self._config.stripe_secret_key:
                raise ProviderNotConfigured("Card payments are not configured")
            self._client = stripe.StripeClient(
                self._config.stripe_secret_key,
                http_client=stripe.RequestsClient(timeout=self._config.provider_timeout_seconds),
            )
        return self._client.v1

    @contextmanager
    def _provider_call(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.warning("Stripe %s unavailable: %s", operation, exc)
            raise ProviderUnavailable(f"Card payment provider unavailable during {operation}") from exc
        except stripe.InvalidRequestError as exc:
            if exc.http_status == 404:
                raise NotFound(f"Card payment provider has no such object: {exc.param or operation}") from exc
            raise InvalidInput(str(exc.user_message or exc)) from exc
        except stripe.AuthenticationError as exc:
            raise ProviderNotConfigured("Card payment credentials were rejected") from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe %s failed: %s", operation, exc)
            raise ProviderUnavailable(f"Card payment provider error during {operation}") from exc

    def _price_id(self, key: str) -> str:
        price_id = self._config.stripe_price_ids.get(key)
        if not price_id:
            raise InvalidItem(f"No card payment price configured for {key}")
        return price_id

    def _get_or_create_customer(self, user: BillingUser) -> str:
        existing = self._stripe.customers.list(params={"email": user.email, "limit": 1})
        if existing.data:
            return existing.data[0].id
        params: Dict[str, Any] = {"email": user.email, "metadata": {"userId": user.id}}
        if user.name:
            params["name"] = user.name
        customer = self._stripe.customers.create(params=params)
        logger.info("Created Stripe customer %s for user %s", customer.id, user.id)
        return customer.id

    def create_checkout(self, user: BillingUser, item: ItemSpec) -> CheckoutSession:
        metadata = {"userId": user.id, "jobId": item.job_id or ""}
        if item.payment_type == PaymentType.ONE_TIME:
            if item.package_type is None:
                raise InvalidItem("package_type is required for one-time checkout")
            package = get_package_definition(item.package_type)
            price_id = self._price_id(package.price_env_key())
            mode = "payment"
            metadata.update({"type": "one_time", "packageType": package.key.value})
        else:
            if item.plan is None:
                raise InvalidItem("plan is required for subscription checkout")
            plan = get_plan_definition(item.plan)
            cycle = parse_billing_cycle(item.billing_cycle or BillingCycle.MONTHLY)
            price_id = self._price_id(plan.price_env_key(cycle))
            mode = "subscription"
            metadata.update(
                {"type": "subscription", "planType": plan.key.value, "billingCycle": cycle.value}
            )

        base_url = self._config.app_base_url
        params: Dict[str, Any] = {
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": f"{base_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{base_url}/pricing",
            "allow_promotion_codes": True,
            "metadata": metadata,
        }
        if mode == "subscription":
            params["subscription_data"] = {"metadata": {"userId": user.id}}

        with self._provider_call("checkout"):
            params["customer"] = self._get_or_create_customer(user)
            session = self._stripe.checkout.sessions.create(params=params)

        logger.info(
            "Created checkout session %s for user %s",
            session.id,
            user.id,
            extra={"mode": mode, "price_id": price_id},
        )
        return CheckoutSession(
            checkout_url=session.url or "",
            external_session_id=session.id,
            client_secret=getattr(session, "client_secret", None),
            expires_at=from_timestamp(getattr(session, "expires_at", None)),
        )

    def create_invoice(self, user: BillingUser, item: ItemSpec) -> InvoiceResult:
        if item.payment_type == PaymentType.ONE_TIME:
            if item.package_type is None:
                raise InvalidItem("package_type is required for a package invoice")
            package = get_package_definition(item.package_type)
            amount = package.price
            description = f"{package.display_name} design package"
        else:
            if item.plan is None:
                raise InvalidItem("plan is required for a subscription invoice")
            plan = get_plan_definition(item.plan)
            cycle = parse_billing_cycle(item.billing_cycle or BillingCycle.MONTHLY)
            amount = plan.price_for(cycle)
            description = f"{plan.display_name} plan ({cycle.value.lower()})"

        currency = self._config.currency.lower()
        with self._provider_call("invoice"):
            customer_id = self._get_or_create_customer(user)
            self._stripe.invoice_items.create(
                params={
                    "customer": customer_id,
                    "amount": to_minor_units(amount),
                    "currency": currency,
                    "description": description,
                }
            )
            invoice = self._stripe.invoices.create(
                params={
                    "customer": customer_id,
                    "collection_method": "send_invoice",
                    "days_until_due": INVOICE_DUE_DAYS,
                    "pending_invoice_items_behavior": "include",
                    "metadata": {"userId": user.id, "jobId": item.job_id or ""},
                }
            )
            finalized = self._stripe.invoices.finalize_invoice(invoice.id)

        return InvoiceResult(
            invoice_id=finalized.id,
            invoice_number=getattr(finalized, "number", None) or "",
            payment_url=getattr(finalized, "hosted_invoice_url", None) or "",
            total_amount=from_minor_units(getattr(finalized, "total", to_minor_units(amount))),
            currency=self._config.currency,
        )

    def cancel_subscription(self, external_ref: str, mode: CancellationMode) -> None:
        with self._provider_call("cancel"):
            if mode == CancellationMode.IMMEDIATE:
                self._stripe.subscriptions.cancel(external_ref)
            else:
                self._stripe.subscriptions.update(external_ref, params={"cancel_at_period_end": True})
        logger.info("Requested %s cancellation for subscription %s", mode.value, external_ref)

    def resume_subscription(self, external_ref: str) -> None:
        with self._provider_call("resume"):
            current = self._stripe.subscriptions.retrieve(external_ref)
            if current.status == "canceled" or not current.cancel_at_period_end:
                raise InvalidState("Subscription is not scheduled for cancellation")
            self._stripe.subscriptions.update(external_ref, params={"cancel_at_period_end": False})
        logger.info("Resumed subscription %s", external_ref)

    def fetch_payment_status(self, external_ref: str) -> ProviderPaymentStatus:
        with self._provider_call("status"):
            if external_ref.startswith("cs_"):
                session = self._stripe.checkout.sessions.retrieve(external_ref)
                raw_status = session.payment_status or session.status or "unpaid"
                if raw_status in {"paid", "no_payment_required"}:
                    status = PaymentStatus.PAID
                elif session.status == "expired":
                    status = PaymentStatus.FAILED
                else:
                    status = PaymentStatus.PENDING
                return ProviderPaymentStatus(
                    external_ref=external_ref,
                    status=status,
                    raw_status=raw_status,
                    amount_paid=from_minor_units(getattr(session, "amount_total", 0)),
                )
            if external_ref.startswith("in_"):
                invoice = self._stripe.invoices.retrieve(external_ref)
                raw_status = invoice.status or "open"
                status = {
                    "paid": PaymentStatus.PAID,
                    "uncollectible": PaymentStatus.FAILED,
                    "void": PaymentStatus.FAILED,
                }.get(raw_status, PaymentStatus.PENDING)
                return ProviderPaymentStatus(
                    external_ref=external_ref,
                    status=status,
                    raw_status=raw_status,
                    amount_paid=from_minor_units(getattr(invoice, "amount_paid", 0)),
                    balance_due=from_minor_units(getattr(invoice, "amount_remaining", 0)),
                )
            if external_ref.startswith("pi_"):
                intent = self._stripe.payment_intents.retrieve(external_ref)
                raw_status = intent.status
                if raw_status == "succeeded":
                    status = PaymentStatus.PAID
                elif raw_status == "canceled":
                    status = PaymentStatus.FAILED
                else:
                    status = PaymentStatus.PENDING
                return ProviderPaymentStatus(
                    external_ref=external_ref,
                    status=status,
                    raw_status=raw_status,
                    amount_paid=from_minor_units(getattr(intent, "amount_received", 0)),
                )
        raise InvalidInput(f"Unrecognized card payment reference: {external_ref}")

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        with self._provider_call("portal"):
            session = self._stripe.billing_portal.sessions.create(
                params={"customer": customer_ref, "return_url": return_url}
            )
        return session.url

    def get_checkout_status(self, session_id: str) -> CheckoutStatus:
        with self._provider_call("checkout status"):
            session = self._stripe.checkout.sessions.retrieve(session_id, params={"expand": ["customer"]})
        customer = getattr(session, "customer", None)
        customer_email = getattr(customer, "email", None) if not isinstance(customer, str) else None
        details = getattr(session, "customer_details", None)
        if customer_email is None and details is not None:
            customer_email = getattr(details, "email", None)
        return CheckoutStatus(
            session_id=session.id,
            status=session.status or "open",
            payment_status=session.payment_status or "unpaid",
            customer_email=customer_email,
            metadata=dict(getattr(session, "metadata", None) or {}),
        )

    def verify_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> ExternalEvent:
        secret = self._config.stripe_webhook_secret
        if not secret:
            raise ProviderNotConfigured("Card payment webhook secret is not configured")
        if not signature_header:
            raise SignatureInvalid("missing signature header")

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureInvalid("payload is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature_header, secret, self._config.stripe_webhook_tolerance
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureInvalid("signature mismatch") from exc

        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise SignatureInvalid("payload is not valid JSON") from exc
        if not isinstance(body, dict):
            raise InvalidInput("card payment event is not a JSON object")

        return self.normalize_event(body)

    def normalize_event(self, body: Mapping[str, Any]) -> ExternalEvent:
        """Translate a verified Stripe event body into an :class:`ExternalEvent`."""

        event_id = str(body.get("id") or "").strip()
        if not event_id:
            raise InvalidInput("card payment event has no id")
        raw_type = str(body.get("type", ""))
        event_type = _EVENT_TYPES.get(raw_type, ExternalEventType.UNHANDLED)
        obj = (body.get("data") or {}).get("object") or {}

        payload: Dict[str, object] = {}
        if event_type in {ExternalEventType.CHECKOUT_COMPLETED, ExternalEventType.CHECKOUT_EXPIRED}:
            payload = _checkout_snapshot(obj).model_dump()
        elif event_type in {
            ExternalEventType.SUBSCRIPTION_CREATED,
            ExternalEventType.SUBSCRIPTION_UPDATED,
            ExternalEventType.SUBSCRIPTION_DELETED,
        }:
            payload = _subscription_snapshot(obj, self._config.stripe_price_ids).model_dump()
        elif event_type in {ExternalEventType.INVOICE_PAID, ExternalEventType.INVOICE_PAYMENT_FAILED}:
            payload = _invoice_snapshot(obj).model_dump()
        elif event_type in {ExternalEventType.PAYMENT_SUCCEEDED, ExternalEventType.PAYMENT_FAILED}:
            status = (
                PaymentStatus.PAID
                if event_type == ExternalEventType.PAYMENT_SUCCEEDED
                else PaymentStatus.FAILED
            )
            payload = PaymentSnapshot(
                external_ref=str(obj.get("id")),
                status=status,
                amount=from_minor_units(obj.get("amount")),
                currency=_currency(obj.get("currency")),
            ).model_dump()
        elif event_type == ExternalEventType.PAYMENT_REFUNDED:
            payload = PaymentSnapshot(
                external_ref=str(obj.get("payment_intent") or obj.get("id")),
                status=PaymentStatus.REFUNDED,
                amount=from_minor_units(obj.get("amount_refunded")),
                currency=_currency(obj.get("currency")),
            ).model_dump()

        return ExternalEvent(
            provider=self.provider,
            event_type=event_type,
            external_event_id=event_id,
            payload=payload,
            raw_type=raw_type,
            occurred_at=from_timestamp(body.get("created")) or datetime.now(timezone.utc),
        )


def _currency(value: object) -> Optional[str]:
    return str(value).upper() if value else None


def _metadata(obj: Mapping[str, Any]) -> Dict[str, str]:
    return {str(key): str(value) for key, value in (obj.get("metadata") or {}).items()}


def _enum_or_none(enum_cls, value: Optional[str]):
    if not value:
        return None
    try:
        return enum_cls(value.upper())
    except ValueError:
        return None


def _checkout_snapshot(obj: Mapping[str, Any]) -> CheckoutSnapshot:
    metadata = _metadata(obj)
    kind = metadata.get("type")
    payment_type = None
    if kind == "one_time":
        payment_type = PaymentType.ONE_TIME
    elif kind == "subscription" or obj.get("mode") == "subscription":
        payment_type = PaymentType.SUBSCRIPTION
    elif obj.get("mode") == "payment":
        payment_type = PaymentType.ONE_TIME
    return CheckoutSnapshot(
        session_id=str(obj.get("id")),
        user_id=metadata.get("userId") or None,
        payment_type=payment_type,
        package_type=_enum_or_none(PackageType, metadata.get("packageType")),
        plan=_enum_or_none(PlanType, metadata.get("planType")),
        billing_cycle=_enum_or_none(BillingCycle, metadata.get("billingCycle")),
        job_id=metadata.get("jobId") or None,
        amount_total=from_minor_units(obj.get("amount_total")),
        currency=_currency(obj.get("currency")) or "NZD",
        external_payment_ref=_ref(obj.get("payment_intent")),
        external_subscription_id=_ref(obj.get("subscription")),
    )


def _ref(value: object) -> Optional[str]:
    # Expanded objects carry their id; unexpanded references are plain strings.
    if isinstance(value, Mapping):
        return value.get("id")
    return str(value) if value else None


def _subscription_snapshot(obj: Mapping[str, Any], price_ids: Mapping[str, str]) -> SubscriptionSnapshot:
    metadata = _metadata(obj)
    items = ((obj.get("items") or {}).get("data")) or []
    first_item = items[0] if items else {}
    price_id = _ref((first_item or {}).get("price"))

    period_start = obj.get("current_period_start") or first_item.get("current_period_start")
    period_end = obj.get("current_period_end") or first_item.get("current_period_end")

    plan = None
    cycle = None
    resolved = plan_for_price_id(price_id, price_ids)
    if resolved:
        plan, cycle = resolved
    else:
        plan = _enum_or_none(PlanType, metadata.get("planType"))
        cycle = _enum_or_none(BillingCycle, metadata.get("billingCycle"))
        interval = ((first_item.get("price") or {}).get("recurring") or {}).get("interval")
        if cycle is None and interval:
            cycle = BillingCycle.YEARLY if interval == "year" else BillingCycle.MONTHLY

    return SubscriptionSnapshot(
        external_subscription_id=str(obj.get("id")),
        external_customer_id=_ref(obj.get("customer")),
        user_id=metadata.get("userId") or None,
        status=str(obj.get("status", "")),
        price_id=price_id,
        plan=plan,
        billing_cycle=cycle,
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        canceled_at=from_timestamp(obj.get("canceled_at")),
    )


def _invoice_snapshot(obj: Mapping[str, Any]) -> InvoiceSnapshot:
    lines = ((obj.get("lines") or {}).get("data")) or []
    line_period = (lines[0].get("period") if lines else None) or {}
    subscription_ref = _ref(obj.get("subscription"))
    details = obj.get("subscription_details") or {}
    parent = (obj.get("parent") or {}).get("subscription_details") or {}
    if subscription_ref is None:
        subscription_ref = _ref(parent.get("subscription"))
    user_id = (
        (details.get("metadata") or {}).get("userId")
        or (parent.get("metadata") or {}).get("userId")
        or _metadata(obj).get("userId")
    )
    return InvoiceSnapshot(
        external_invoice_id=str(obj.get("id")),
        external_subscription_id=subscription_ref,
        user_id=user_id or None,
        amount_paid=from_minor_units(obj.get("amount_paid")),
        amount_due=from_minor_units(obj.get("amount_due")),
        currency=_currency(obj.get("currency")) or "NZD",
        invoice_number=obj.get("number"),
        invoice_url=obj.get("hosted_invoice_url"),
        period_start=from_timestamp(line_period.get("start") or obj.get("period_start")),
        period_end=from_timestamp(line_period.get("end") or obj.get("period_end")),
    )


__all__ = ["StripeAdapter"]
