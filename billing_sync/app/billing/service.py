"""Core service coordinating billing flows with external providers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional
from uuid import uuid4

from ...config import BillingConfig
from .adapters import AuthorizingAdapter, ProviderAdapter
from .catalog import (
    get_package_definition,
    get_plan_definition,
    parse_billing_cycle,
)
from .exceptions import (
    InvalidInput,
    InvalidState,
    LedgerUnavailable,
    NotFound,
    ProviderNotConfigured,
    Unauthorized,
)
from .models import (
    BillingProvider,
    BillingUser,
    CancellationMode,
    CheckoutSession,
    CheckoutStatus,
    ExternalEvent,
    ExternalEventType,
    InvoiceResult,
    InvoicingAuthStatus,
    ItemSpec,
    Payment,
    PaymentSnapshot,
    PaymentStatus,
    PaymentType,
    Subscription,
    SubscriptionStatus,
    SyncResult,
)
from .oauth_state import build_state, parse_state
from .reconciler import EventReconciler
from .repository import BillingRepository

logger = logging.getLogger("billing")

_POLL_EVENT_TYPES = {
    PaymentStatus.PAID: ExternalEventType.PAYMENT_SUCCEEDED,
    PaymentStatus.FAILED: ExternalEventType.PAYMENT_FAILED,
    PaymentStatus.REFUNDED: ExternalEventType.PAYMENT_REFUNDED,
}


def parse_payment_type(value: object) -> PaymentType:
    if isinstance(value, PaymentType):
        return value
    normalized = str(value or "").strip().upper().replace("-", "_")
    try:
        return PaymentType(normalized)
    except ValueError as exc:
        raise InvalidInput(f"Unknown payment type: {value!r}") from exc


@dataclass(slots=True)
class BillingService:
    """Coordinates checkouts, invoices and subscription changes.

    The service talks to providers through the registered adapters and never
    settles payments itself; confirmed outcomes flow through the reconciler.
    """

    repository: BillingRepository
    adapters: Mapping[BillingProvider, ProviderAdapter]
    reconciler: EventReconciler
    config: BillingConfig

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _adapter(self, provider: BillingProvider) -> ProviderAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None or not adapter.is_configured():
            raise ProviderNotConfigured(f"Billing provider '{provider.value}' is not configured")
        return adapter

    def _invoicing_adapter(self) -> Optional[AuthorizingAdapter]:
        adapter = self.adapters.get(BillingProvider.INVOICING)
        return adapter  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Checkout and invoices
    # ------------------------------------------------------------------

    def start_one_time_checkout(
        self,
        user: BillingUser,
        package_type: object,
        *,
        job_id: Optional[str] = None,
    ) -> CheckoutSession:
        package = get_package_definition(package_type)
        adapter = self._adapter(BillingProvider.CARD_PAYMENT)
        session = adapter.create_checkout(
            user,
            ItemSpec(payment_type=PaymentType.ONE_TIME, package_type=package.key, job_id=job_id),
        )
        logger.info(
            "Started %s package checkout %s for user %s",
            package.key.value,
            session.external_session_id,
            user.id,
        )
        return session

    def start_subscription_checkout(
        self,
        user: BillingUser,
        plan: object,
        billing_cycle: object,
    ) -> CheckoutSession:
        definition = get_plan_definition(plan)
        cycle = parse_billing_cycle(billing_cycle)
        existing = self.repository.get_subscription_by_user(user.id)
        if existing is not None and existing.status != SubscriptionStatus.CANCELLED:
            raise InvalidState("User already has an active subscription")

        adapter = self._adapter(BillingProvider.CARD_PAYMENT)
        session = adapter.create_checkout(
            user,
            ItemSpec(payment_type=PaymentType.SUBSCRIPTION, plan=definition.key, billing_cycle=cycle),
        )
        logger.info(
            "Started %s/%s subscription checkout %s for user %s",
            definition.key.value,
            cycle.value,
            session.external_session_id,
            user.id,
        )
        return session

    def create_invoice(
        self,
        user: BillingUser,
        *,
        payment_type: object,
        package_type: Optional[object] = None,
        plan: Optional[object] = None,
        billing_cycle: Optional[object] = None,
        job_id: Optional[str] = None,
    ) -> InvoiceResult:
        kind = parse_payment_type(payment_type)
        metadata = {}
        if kind == PaymentType.ONE_TIME:
            if package_type is None:
                raise InvalidInput("package_type is required for one-time invoices")
            package = get_package_definition(package_type)
            item = ItemSpec(payment_type=kind, package_type=package.key, job_id=job_id)
            amount = package.price
            description = f"{package.display_name} Package"
            metadata["package_type"] = package.key.value
        else:
            if plan is None or billing_cycle is None:
                raise InvalidInput("plan and billing_cycle are required for subscription invoices")
            definition = get_plan_definition(plan)
            cycle = parse_billing_cycle(billing_cycle)
            item = ItemSpec(payment_type=kind, plan=definition.key, billing_cycle=cycle)
            amount = definition.price_for(cycle)
            description = f"{definition.display_name} Plan ({cycle.value.lower()})"
            metadata.update({"plan": definition.key.value, "billing_cycle": cycle.value})

        adapter = self._adapter(BillingProvider.INVOICING)
        result = adapter.create_invoice(user, item)

        payment = self.repository.insert_payment_if_absent(
            Payment(
                payment_id=f"pay_{uuid4().hex}",
                user_id=user.id,
                amount=result.total_amount or amount,
                currency=result.currency,
                payment_type=kind,
                status=PaymentStatus.PENDING,
                description=description,
                job_id=job_id,
                provider=BillingProvider.INVOICING,
                external_ref=result.invoice_id,
                invoice_number=result.invoice_number or None,
                invoice_url=result.payment_url,
                metadata=metadata,
            )
        )
        if payment is None:
            payment = self.repository.get_payment_by_external_ref(result.invoice_id)
            if payment is None:
                raise LedgerUnavailable("Invoice payment could not be recorded")
            logger.info("Invoice %s was already recorded as payment %s", result.invoice_id, payment.payment_id)
        logger.info(
            "Created invoice %s for user %s (payment %s)",
            result.invoice_number or result.invoice_id,
            user.id,
            payment.payment_id,
        )
        return result.model_copy(update={"payment_id": payment.payment_id})

    def create_portal_session(self, user: BillingUser, *, return_url: Optional[str] = None) -> str:
        subscription = self.repository.get_subscription_by_user(user.id)
        if subscription is None or not subscription.external_customer_id:
            raise NotFound("No billing account found for user")
        adapter = self._adapter(subscription.provider)
        return adapter.create_portal_session(
            subscription.external_customer_id,
            return_url or f"{self.config.app_base_url.rstrip('/')}/billing",
        )

    def get_checkout_status(self, user: BillingUser, session_id: str) -> CheckoutStatus:
        if not session_id or not session_id.startswith("cs_"):
            raise InvalidInput("Invalid checkout session id")
        adapter = self._adapter(BillingProvider.CARD_PAYMENT)
        status = adapter.get_checkout_status(session_id)
        owner = status.metadata.get("userId")
        if owner and owner != user.id:
            raise Unauthorized("Checkout session belongs to another user")
        return status

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def get_subscription(self, user: BillingUser) -> Optional[Subscription]:
        return self.repository.get_subscription_by_user(user.id)

    def cancel(self, user: BillingUser) -> Subscription:
        subscription = self.repository.get_subscription_by_user(user.id)
        if subscription is None:
            raise NotFound("No subscription found")
        if subscription.status == SubscriptionStatus.CANCELLED:
            raise InvalidState("Subscription is already cancelled")
        if subscription.cancel_at_period_end:
            raise InvalidState("Subscription is already scheduled for cancellation")
        if not subscription.external_subscription_id:
            raise InvalidState("Subscription is not managed by a billing provider")

        adapter = self._adapter(subscription.provider)
        adapter.cancel_subscription(subscription.external_subscription_id, CancellationMode.AT_PERIOD_END)

        updated = self._write_flag(subscription, cancel_at_period_end=True)
        logger.info(
            "Subscription %s scheduled to cancel at %s",
            updated.subscription_id,
            updated.current_period_end.isoformat(),
        )
        return updated

    def resume(self, user: BillingUser) -> Subscription:
        subscription = self.repository.get_subscription_by_user(user.id)
        if subscription is None:
            raise NotFound("No subscription found")
        if subscription.status == SubscriptionStatus.CANCELLED or not subscription.cancel_at_period_end:
            raise InvalidState("Subscription is not scheduled for cancellation")
        if not subscription.external_subscription_id:
            raise InvalidState("Subscription is not managed by a billing provider")

        adapter = self._adapter(subscription.provider)
        adapter.resume_subscription(subscription.external_subscription_id)

        updated = self._write_flag(subscription, cancel_at_period_end=False)
        logger.info("Subscription %s resumed", updated.subscription_id)
        return updated

    def _write_flag(self, subscription: Subscription, *, cancel_at_period_end: bool) -> Subscription:
        """Optimistically record the cancel flag after the provider accepted it."""

        current = subscription
        for _ in range(self.reconciler.max_conflict_retries):
            if current.status == SubscriptionStatus.CANCELLED:
                return current
            updated = current.model_copy(
                update={
                    "cancel_at_period_end": cancel_at_period_end,
                    "cancelled_at": self._now() if cancel_at_period_end else None,
                }
            )
            persisted = self.repository.update_subscription(updated, expected_version=current.version)
            if persisted is not None:
                return persisted
            reloaded = self.repository.get_subscription(current.subscription_id)
            if reloaded is None:
                raise NotFound("Subscription disappeared")
            if reloaded.cancel_at_period_end == cancel_at_period_end:
                return reloaded
            current = reloaded
        logger.warning(
            "Could not record cancel flag for %s; provider webhook will reconcile",
            subscription.subscription_id,
        )
        return current

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def get_payment(self, payment_id: str, user: BillingUser) -> Payment:
        payment = self.repository.get_payment(payment_id)
        if payment is None:
            raise NotFound("Payment not found")
        if payment.user_id != user.id:
            raise Unauthorized("Payment belongs to another user")
        return payment

    def sync_status(self, payment_id: str, user: BillingUser) -> SyncResult:
        payment = self.get_payment(payment_id, user)
        adapter = self.adapters.get(payment.provider)
        if adapter is None or not adapter.is_configured() or not payment.external_ref:
            return _sync_result(payment, synced=False)

        try:
            remote = adapter.fetch_payment_status(payment.external_ref)
        except ProviderNotConfigured:
            logger.warning(
                "Provider %s lost its credentials; returning local status for %s",
                payment.provider.value,
                payment.payment_id,
            )
            return _sync_result(payment, synced=False)

        event_type = _POLL_EVENT_TYPES.get(remote.status)
        if event_type is None or remote.status == payment.status:
            return _sync_result(payment, synced=True)

        event = ExternalEvent(
            provider=payment.provider,
            event_type=event_type,
            external_event_id=f"poll:{payment.external_ref}:{remote.status.value}",
            payload=PaymentSnapshot(
                external_ref=payment.external_ref,
                status=remote.status,
                amount=remote.amount_paid,
            ).model_dump(),
            raw_type=remote.raw_status,
            occurred_at=self._now(),
        )
        self.reconciler.apply(event, retry_transient=False)

        refreshed = self.repository.get_payment(payment.payment_id) or payment
        return _sync_result(refreshed, synced=True)

    # ------------------------------------------------------------------
    # Invoicing account linking
    # ------------------------------------------------------------------

    def invoicing_auth_status(self, user: BillingUser) -> InvoicingAuthStatus:
        adapter = self._invoicing_adapter()
        if adapter is None or not adapter.is_configured():
            return InvoicingAuthStatus(is_configured=False, is_authenticated=False)
        if adapter.has_credentials():
            return InvoicingAuthStatus(is_configured=True, is_authenticated=True)
        return InvoicingAuthStatus(
            is_configured=True,
            is_authenticated=False,
            auth_url=adapter.authorization_url(build_state(user.id, self.config.state_secret)),
        )

    def complete_invoicing_authorization(self, code: str, state: str) -> str:
        """Verify the callback ``state`` and store tokens; returns the linking user id."""

        if not code:
            raise InvalidInput("Missing authorization code")
        user_id = parse_state(state, self.config.state_secret)
        adapter = self._invoicing_adapter()
        if adapter is None or not adapter.is_configured():
            raise ProviderNotConfigured("Invoicing provider is not configured")
        adapter.exchange_code(code, linked_user_id=user_id)
        return user_id


def _sync_result(payment: Payment, *, synced: bool) -> SyncResult:
    return SyncResult(
        payment_id=payment.payment_id,
        status=payment.status,
        is_paid=payment.is_paid,
        synced=synced,
    )


__all__ = ["BillingService", "parse_payment_type"]
