"""Applies provider events and poll results to the billing ledger.

The reconciler is the only writer of authoritative subscription and payment
state. Every mutation is conditional: subscriptions are written with a
version compare-and-set, payments with an expected-status compare-and-set,
the (subscription_id, subscription_month) upsert or the insert keyed by
(provider, external_ref).
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Optional, Protocol
from uuid import uuid4

from .catalog import (
    CURRENCY,
    PLAN_CATALOG,
    add_billing_cycle,
    cycle_tag,
    get_package_definition,
    parse_billing_cycle,
    parse_plan_type,
)
from .exceptions import EventOutOfOrder, InvalidInput, LedgerUnavailable, ReconciliationError
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingCycle,
    BillingProvider,
    CheckoutSnapshot,
    ExternalEvent,
    ExternalEventType,
    InvoiceSnapshot,
    Payment,
    PaymentSnapshot,
    PaymentStatus,
    PaymentType,
    Subscription,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from .repository import BillingRepository

logger = logging.getLogger("billing")

_ACTIVE_PROVIDER_STATUSES = {"active", "trialing"}
_PAUSED_PROVIDER_STATUSES = {"paused"}
_TERMINAL_PROVIDER_STATUSES = {"canceled", "incomplete_expired"}


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNHANDLED = "unhandled"


class BillingNotifier(Protocol):
    """Dispatches billing related notifications to end users."""

    def notify_subscription_started(self, subscription: Subscription) -> None:
        ...

    def notify_cancellation_scheduled(self, subscription: Subscription) -> None:
        ...

    def notify_subscription_ended(self, subscription: Subscription) -> None:
        ...

    def notify_payment_received(self, payment: Payment) -> None:
        ...

    def notify_payment_failed(self, payment: Payment) -> None:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def map_provider_status(provider_status: str) -> Optional[SubscriptionStatus]:
    """Map a provider subscription status to a local one.

    ``None`` means the local status must be kept (dunning states such as
    ``past_due``, ``unpaid`` and ``incomplete``).
    """

    normalized = (provider_status or "").lower()
    if normalized in _ACTIVE_PROVIDER_STATUSES:
        return SubscriptionStatus.ACTIVE
    if normalized in _PAUSED_PROVIDER_STATUSES:
        return SubscriptionStatus.PAUSED
    if normalized in _TERMINAL_PROVIDER_STATUSES:
        return SubscriptionStatus.CANCELLED
    return None


@dataclass(slots=True)
class EventReconciler:
    """Idempotently applies :class:`ExternalEvent` values to the ledger."""

    repository: BillingRepository
    notifier: BillingNotifier
    event_logger: BillingEventLogger
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    max_conflict_retries: int = 5
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], datetime] = _utcnow
    currency: str = CURRENCY
    _handlers: Dict[ExternalEventType, Callable[[ExternalEvent], ReconcileOutcome]] = field(
        init=False, repr=False
    )

    def __post_init__(self) -> None:
        self._handlers = {
            ExternalEventType.CHECKOUT_COMPLETED: self._on_checkout_completed,
            ExternalEventType.CHECKOUT_EXPIRED: self._on_checkout_expired,
            ExternalEventType.SUBSCRIPTION_CREATED: self._on_subscription_snapshot,
            ExternalEventType.SUBSCRIPTION_UPDATED: self._on_subscription_snapshot,
            ExternalEventType.SUBSCRIPTION_DELETED: self._on_subscription_snapshot,
            ExternalEventType.INVOICE_PAID: self._on_invoice_paid,
            ExternalEventType.INVOICE_PAYMENT_FAILED: self._on_invoice_payment_failed,
            ExternalEventType.PAYMENT_SUCCEEDED: self._on_payment_update,
            ExternalEventType.PAYMENT_FAILED: self._on_payment_update,
            ExternalEventType.PAYMENT_REFUNDED: self._on_payment_update,
        }

    def apply(self, event: ExternalEvent, *, retry_transient: bool = True) -> ReconcileOutcome:
        """Apply ``event`` once.

        Transient ledger failures are retried with linear backoff when
        ``retry_transient`` is set (webhook path) and raised immediately
        otherwise (poll path).
        """

        attempts = max(1, self.max_attempts) if retry_transient else 1
        for attempt in range(1, attempts + 1):
            try:
                return self._apply_once(event)
            except LedgerUnavailable:
                if attempt >= attempts:
                    raise
                logger.warning(
                    "Ledger unavailable applying %s (attempt %s/%s)",
                    event.idempotency_key,
                    attempt,
                    attempts,
                )
                self.sleep(self.backoff_seconds * attempt)
        raise LedgerUnavailable("Billing ledger is unavailable")  # pragma: no cover

    def _apply_once(self, event: ExternalEvent) -> ReconcileOutcome:
        if self.repository.has_processed_event(event.provider, event.external_event_id):
            logger.info("Skipping duplicate event %s", event.idempotency_key)
            return ReconcileOutcome.DUPLICATE

        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info(
                "Acknowledged unhandled event %s",
                event.idempotency_key,
                extra={"raw_type": event.raw_type},
            )
            self.repository.mark_event_processed(event, outcome=ReconcileOutcome.UNHANDLED.value)
            return ReconcileOutcome.UNHANDLED

        try:
            outcome = handler(event)
        except EventOutOfOrder as exc:
            logger.warning(
                "Deferring %s until the ledger catches up: %s",
                event.idempotency_key,
                exc.message,
                extra={"event_type": event.event_type.value},
            )
            raise
        except ReconciliationError as exc:
            self._record_failure(event, exc)
            self.repository.mark_event_processed(event, outcome="failed")
            raise

        self.repository.mark_event_processed(event, outcome=outcome.value)
        logger.info(
            "Reconciled event %s outcome=%s",
            event.idempotency_key,
            outcome.value,
            extra={"event_type": event.event_type.value},
        )
        return outcome

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _on_subscription_snapshot(self, event: ExternalEvent) -> ReconcileOutcome:
        snapshot = SubscriptionSnapshot.model_validate(event.payload)
        deleted = (
            event.event_type == ExternalEventType.SUBSCRIPTION_DELETED
            or map_provider_status(snapshot.status) == SubscriptionStatus.CANCELLED
        )
        occurred_at = self._occurred_at(event)

        for _ in range(self.max_conflict_retries):
            current = self.repository.get_subscription_by_external_id(snapshot.external_subscription_id)
            if current is None and snapshot.user_id:
                current = self.repository.get_subscription_by_user(snapshot.user_id)

            if current is None:
                if deleted:
                    logger.info(
                        "Ignoring end of unknown subscription %s", snapshot.external_subscription_id
                    )
                    return ReconcileOutcome.IGNORED
                if not snapshot.user_id:
                    raise ReconciliationError(
                        f"Subscription {snapshot.external_subscription_id} does not match any user"
                    )
                created = self._subscription_from_snapshot(snapshot, occurred_at)
                if created is None:
                    return ReconcileOutcome.IGNORED
                inserted = self.repository.insert_subscription(created)
                if inserted is None:
                    continue
                self._subscription_started(inserted)
                return ReconcileOutcome.APPLIED

            updated = self._merge_snapshot(current, snapshot, deleted=deleted, occurred_at=occurred_at)
            if updated is None:
                return ReconcileOutcome.IGNORED
            persisted = self.repository.update_subscription(updated, expected_version=current.version)
            if persisted is None:
                continue
            self._subscription_changed(current, persisted)
            return ReconcileOutcome.APPLIED

        raise LedgerUnavailable("Too many concurrent updates to subscription")

    def _subscription_from_snapshot(
        self, snapshot: SubscriptionSnapshot, occurred_at: datetime
    ) -> Optional[Subscription]:
        status = map_provider_status(snapshot.status)
        if status is None:
            logger.info(
                "Subscription %s is %s; waiting for activation",
                snapshot.external_subscription_id,
                snapshot.status,
            )
            return None
        if snapshot.plan is None:
            raise ReconciliationError(
                f"Subscription {snapshot.external_subscription_id} has no recognised plan"
            )
        cycle = snapshot.billing_cycle or BillingCycle.MONTHLY
        plan = PLAN_CATALOG[snapshot.plan]
        start = snapshot.current_period_start or occurred_at
        end = snapshot.current_period_end or add_billing_cycle(start, cycle)
        return Subscription(
            subscription_id=f"sub_{uuid4().hex}",
            user_id=str(snapshot.user_id),
            plan=plan.key,
            status=status,
            billing_cycle=cycle,
            price_per_cycle=plan.price_for(cycle),
            currency=self.currency,
            provider=BillingProvider.CARD_PAYMENT,
            external_subscription_id=snapshot.external_subscription_id,
            external_customer_id=snapshot.external_customer_id,
            external_price_id=snapshot.price_id,
            current_period_start=start,
            current_period_end=max(end, start),
            cancel_at_period_end=snapshot.cancel_at_period_end and status != SubscriptionStatus.CANCELLED,
            projects_limit=plan.projects_per_period,
            last_reset_at=occurred_at,
            last_event_at=occurred_at,
        )

    def _merge_snapshot(
        self,
        current: Subscription,
        snapshot: SubscriptionSnapshot,
        *,
        deleted: bool,
        occurred_at: datetime,
    ) -> Optional[Subscription]:
        replacing = current.external_subscription_id != snapshot.external_subscription_id

        if replacing:
            if current.status != SubscriptionStatus.CANCELLED and current.external_subscription_id:
                logger.warning(
                    "Ignoring snapshot for %s; user %s already has live subscription %s",
                    snapshot.external_subscription_id,
                    current.user_id,
                    current.external_subscription_id,
                )
                return None
            if deleted:
                return None
            if current.status != SubscriptionStatus.CANCELLED and current.provider == BillingProvider.INVOICING:
                logger.warning(
                    "Card subscription %s started while invoiced subscription %s is live",
                    snapshot.external_subscription_id,
                    current.subscription_id,
                )
        elif current.status == SubscriptionStatus.CANCELLED:
            return None

        if not deleted and not replacing:
            stored_start = current.current_period_start
            if snapshot.current_period_start and snapshot.current_period_start < stored_start:
                logger.info(
                    "Discarding stale snapshot for %s (period %s < %s)",
                    snapshot.external_subscription_id,
                    snapshot.current_period_start.isoformat(),
                    stored_start.isoformat(),
                )
                return None
            same_period = (
                snapshot.current_period_start is None or snapshot.current_period_start == stored_start
            )
            if same_period and current.last_event_at and occurred_at < current.last_event_at:
                logger.info(
                    "Discarding out-of-order snapshot for %s", snapshot.external_subscription_id
                )
                return None

        update: Dict[str, object] = {
            "last_event_at": max(occurred_at, current.last_event_at or occurred_at),
            "external_customer_id": snapshot.external_customer_id or current.external_customer_id,
        }

        if replacing:
            mapped = map_provider_status(snapshot.status)
            if mapped is None:
                return None
            update.update(
                {
                    "external_subscription_id": snapshot.external_subscription_id,
                    "provider": BillingProvider.CARD_PAYMENT,
                    "status": mapped,
                    "cancelled_at": None,
                }
            )

        if snapshot.plan is not None:
            plan = PLAN_CATALOG[snapshot.plan]
            cycle = snapshot.billing_cycle or current.billing_cycle
            update.update(
                {
                    "plan": plan.key,
                    "billing_cycle": cycle,
                    "price_per_cycle": plan.price_for(cycle),
                    "projects_limit": plan.projects_per_period,
                    "external_price_id": snapshot.price_id or current.external_price_id,
                }
            )

        if deleted:
            update.update(
                {
                    "status": SubscriptionStatus.CANCELLED,
                    "cancel_at_period_end": False,
                    "cancelled_at": snapshot.canceled_at or occurred_at,
                }
            )
        else:
            status = update.get("status") or map_provider_status(snapshot.status) or current.status
            update["status"] = status
            update["cancel_at_period_end"] = snapshot.cancel_at_period_end
            if not snapshot.cancel_at_period_end:
                update["cancelled_at"] = None

        start = current.current_period_start
        if snapshot.current_period_start and (replacing or snapshot.current_period_start > start):
            start = snapshot.current_period_start
            update.update({"projects_used_this_period": 0, "last_reset_at": occurred_at})
        end = current.current_period_end
        if snapshot.current_period_end and snapshot.current_period_end > end:
            end = snapshot.current_period_end
        update["current_period_start"] = start
        update["current_period_end"] = max(end, start)

        return Subscription.model_validate({**current.model_dump(), **update})

    def _subscription_started(self, subscription: Subscription) -> None:
        self.notifier.notify_subscription_started(subscription)
        self._audit(BillingAuditEventType.SUBSCRIPTION_ACTIVATED, subscription=subscription)

    def _subscription_changed(self, before: Subscription, after: Subscription) -> None:
        if after.status == SubscriptionStatus.CANCELLED and before.status != SubscriptionStatus.CANCELLED:
            self.notifier.notify_subscription_ended(after)
            self._audit(BillingAuditEventType.SUBSCRIPTION_CANCELLED, subscription=after)
        elif before.status == SubscriptionStatus.CANCELLED and after.status != SubscriptionStatus.CANCELLED:
            self._subscription_started(after)
        elif after.cancel_at_period_end and not before.cancel_at_period_end:
            self.notifier.notify_cancellation_scheduled(after)
            self._audit(BillingAuditEventType.SUBSCRIPTION_CANCEL_SCHEDULED, subscription=after)
        elif before.cancel_at_period_end and not after.cancel_at_period_end:
            self._audit(BillingAuditEventType.SUBSCRIPTION_RESUMED, subscription=after)
        else:
            self._audit(BillingAuditEventType.SUBSCRIPTION_UPDATED, subscription=after)

    def _advance_period(
        self,
        subscription: Subscription,
        *,
        period_start: datetime,
        period_end: Optional[datetime],
        occurred_at: datetime,
    ) -> Subscription:
        """Move to a later billing period and reset usage counters."""

        for _ in range(self.max_conflict_retries):
            if period_start <= subscription.current_period_start:
                return subscription
            end = period_end or add_billing_cycle(period_start, subscription.billing_cycle)
            updated = subscription.model_copy(
                update={
                    "current_period_start": period_start,
                    "current_period_end": max(subscription.current_period_end, end, period_start),
                    "projects_used_this_period": 0,
                    "last_reset_at": occurred_at,
                }
            )
            persisted = self.repository.update_subscription(updated, expected_version=subscription.version)
            if persisted is not None:
                logger.info(
                    "Subscription %s entered period starting %s; usage reset",
                    persisted.subscription_id,
                    period_start.isoformat(),
                )
                return persisted
            reloaded = self.repository.get_subscription(subscription.subscription_id)
            if reloaded is None:
                raise ReconciliationError(f"Subscription {subscription.subscription_id} disappeared")
            subscription = reloaded
        raise LedgerUnavailable("Too many concurrent updates to subscription")

    def _activate_invoiced_subscription(self, payment: Payment, occurred_at: datetime) -> None:
        try:
            plan = PLAN_CATALOG[parse_plan_type(payment.metadata.get("plan"))]
            cycle = parse_billing_cycle(payment.metadata.get("billing_cycle") or BillingCycle.MONTHLY)
        except InvalidInput as exc:
            raise ReconciliationError(
                f"Payment {payment.payment_id} does not identify a subscription plan"
            ) from exc

        for _ in range(self.max_conflict_retries):
            current = self.repository.get_subscription_by_user(payment.user_id)
            if current is None:
                created = Subscription(
                    subscription_id=f"sub_{uuid4().hex}",
                    user_id=payment.user_id,
                    plan=plan.key,
                    status=SubscriptionStatus.ACTIVE,
                    billing_cycle=cycle,
                    price_per_cycle=plan.price_for(cycle),
                    currency=payment.currency,
                    provider=BillingProvider.INVOICING,
                    current_period_start=occurred_at,
                    current_period_end=add_billing_cycle(occurred_at, cycle),
                    projects_limit=plan.projects_per_period,
                    last_reset_at=occurred_at,
                    last_event_at=occurred_at,
                )
                inserted = self.repository.insert_subscription(created)
                if inserted is None:
                    continue
                self._subscription_started(inserted)
                return

            if current.status != SubscriptionStatus.CANCELLED and current.is_provider_managed:
                logger.warning(
                    "Invoice payment %s for user %s who has card subscription %s; not activating",
                    payment.payment_id,
                    payment.user_id,
                    current.external_subscription_id,
                )
                return

            restarting = current.status == SubscriptionStatus.CANCELLED
            updated = current.model_copy(
                update={
                    "plan": plan.key,
                    "billing_cycle": cycle,
                    "price_per_cycle": plan.price_for(cycle),
                    "projects_limit": plan.projects_per_period,
                    "status": SubscriptionStatus.ACTIVE,
                    "provider": BillingProvider.INVOICING,
                    "external_subscription_id": None,
                    "cancel_at_period_end": False,
                    "cancelled_at": None,
                    "current_period_start": max(occurred_at, current.current_period_start),
                    "current_period_end": max(
                        current.current_period_end, add_billing_cycle(occurred_at, cycle)
                    ),
                    "projects_used_this_period": 0,
                    "last_reset_at": occurred_at,
                    "last_event_at": max(occurred_at, current.last_event_at or occurred_at),
                }
            )
            persisted = self.repository.update_subscription(updated, expected_version=current.version)
            if persisted is None:
                continue
            if restarting:
                self._subscription_started(persisted)
            else:
                self._audit(BillingAuditEventType.SUBSCRIPTION_UPDATED, subscription=persisted)
            return
        raise LedgerUnavailable("Too many concurrent updates to subscription")

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def _on_checkout_completed(self, event: ExternalEvent) -> ReconcileOutcome:
        snapshot = CheckoutSnapshot.model_validate(event.payload)
        occurred_at = self._occurred_at(event)

        if snapshot.payment_type == PaymentType.SUBSCRIPTION:
            if not snapshot.external_subscription_id:
                return ReconcileOutcome.IGNORED
            subscription = self.repository.get_subscription_by_external_id(snapshot.external_subscription_id)
            if subscription is None:
                if snapshot.user_id:
                    raise EventOutOfOrder(
                        f"Checkout {snapshot.session_id} completed before subscription "
                        f"{snapshot.external_subscription_id} is known"
                    )
                logger.info(
                    "Checkout %s names subscription %s but no user",
                    snapshot.session_id,
                    snapshot.external_subscription_id,
                )
                return ReconcileOutcome.IGNORED
            payment = self._record_cycle_payment(
                subscription,
                status=PaymentStatus.PAID,
                amount=snapshot.amount_total or subscription.price_per_cycle,
                month=cycle_tag(subscription.current_period_start),
                external_ref=snapshot.session_id,
                external_payment_ref=snapshot.external_payment_ref,
                occurred_at=occurred_at,
            )
            return ReconcileOutcome.APPLIED if payment is not None else ReconcileOutcome.IGNORED

        existing = self.repository.get_payment_by_external_ref(snapshot.session_id)
        if existing is None and snapshot.external_payment_ref:
            existing = self.repository.get_payment_by_external_ref(snapshot.external_payment_ref)
        if existing is not None:
            settled = self._settle_payment(
                existing,
                PaymentStatus.PAID,
                occurred_at=occurred_at,
                external_payment_ref=snapshot.external_payment_ref,
            )
            return ReconcileOutcome.APPLIED if settled else ReconcileOutcome.IGNORED

        if not snapshot.user_id:
            raise ReconciliationError(f"Checkout {snapshot.session_id} does not identify a user")
        description = "One-time payment"
        amount = snapshot.amount_total
        metadata: Dict[str, str] = {}
        if snapshot.package_type is not None:
            package = get_package_definition(snapshot.package_type)
            description = f"{package.display_name} Package"
            amount = amount or package.price
            metadata["package_type"] = package.key.value
        return self._insert_paid_payment(
            Payment(
                payment_id=f"pay_{uuid4().hex}",
                user_id=snapshot.user_id,
                amount=amount,
                currency=snapshot.currency,
                payment_type=PaymentType.ONE_TIME,
                status=PaymentStatus.PAID,
                description=description,
                job_id=snapshot.job_id,
                provider=event.provider,
                external_ref=snapshot.session_id,
                external_payment_ref=snapshot.external_payment_ref,
                paid_at=occurred_at,
                metadata=metadata,
            ),
            occurred_at=occurred_at,
        )

    def _on_checkout_expired(self, event: ExternalEvent) -> ReconcileOutcome:
        snapshot = CheckoutSnapshot.model_validate(event.payload)
        payment = self.repository.get_payment_by_external_ref(snapshot.session_id)
        if payment is None:
            return ReconcileOutcome.IGNORED
        settled = self._settle_payment(payment, PaymentStatus.FAILED, occurred_at=self._occurred_at(event))
        return ReconcileOutcome.APPLIED if settled else ReconcileOutcome.IGNORED

    def _on_invoice_paid(self, event: ExternalEvent) -> ReconcileOutcome:
        snapshot = InvoiceSnapshot.model_validate(event.payload)
        occurred_at = self._occurred_at(event)

        if snapshot.external_subscription_id:
            subscription = self._invoice_subscription(snapshot)
            period_start = snapshot.period_start or occurred_at
            payment = self._record_cycle_payment(
                subscription,
                status=PaymentStatus.PAID,
                amount=snapshot.amount_paid,
                month=cycle_tag(period_start),
                external_ref=snapshot.external_invoice_id,
                invoice_number=snapshot.invoice_number,
                invoice_url=snapshot.invoice_url,
                occurred_at=occurred_at,
            )
            if snapshot.period_start:
                self._advance_period(
                    subscription,
                    period_start=snapshot.period_start,
                    period_end=snapshot.period_end,
                    occurred_at=occurred_at,
                )
            return ReconcileOutcome.APPLIED if payment is not None else ReconcileOutcome.IGNORED

        payment = self.repository.get_payment_by_external_ref(snapshot.external_invoice_id)
        if payment is not None:
            settled = self._settle_payment(payment, PaymentStatus.PAID, occurred_at=occurred_at)
            return ReconcileOutcome.APPLIED if settled else ReconcileOutcome.IGNORED

        if not snapshot.user_id:
            raise ReconciliationError(
                f"Invoice {snapshot.external_invoice_id} does not match any payment or user"
            )
        label = snapshot.invoice_number or snapshot.external_invoice_id
        return self._insert_paid_payment(
            Payment(
                payment_id=f"pay_{uuid4().hex}",
                user_id=snapshot.user_id,
                amount=snapshot.amount_paid,
                currency=snapshot.currency,
                payment_type=PaymentType.ONE_TIME,
                status=PaymentStatus.PAID,
                description=f"Invoice {label} paid",
                provider=event.provider,
                external_ref=snapshot.external_invoice_id,
                invoice_number=snapshot.invoice_number,
                invoice_url=snapshot.invoice_url,
                paid_at=occurred_at,
            ),
            occurred_at=occurred_at,
        )

    def _on_invoice_payment_failed(self, event: ExternalEvent) -> ReconcileOutcome:
        snapshot = InvoiceSnapshot.model_validate(event.payload)
        occurred_at = self._occurred_at(event)

        if not snapshot.external_subscription_id:
            payment = self.repository.get_payment_by_external_ref(snapshot.external_invoice_id)
            if payment is None:
                return ReconcileOutcome.IGNORED
            settled = self._settle_payment(payment, PaymentStatus.FAILED, occurred_at=occurred_at)
            return ReconcileOutcome.APPLIED if settled else ReconcileOutcome.IGNORED

        subscription = self._invoice_subscription(snapshot)
        payment = self._record_cycle_payment(
            subscription,
            status=PaymentStatus.FAILED,
            amount=snapshot.amount_due,
            month=cycle_tag(snapshot.period_start or occurred_at),
            external_ref=snapshot.external_invoice_id,
            invoice_number=snapshot.invoice_number,
            invoice_url=snapshot.invoice_url,
            occurred_at=occurred_at,
        )
        return ReconcileOutcome.APPLIED if payment is not None else ReconcileOutcome.IGNORED

    def _on_payment_update(self, event: ExternalEvent) -> ReconcileOutcome:
        snapshot = PaymentSnapshot.model_validate(event.payload)
        payment = self.repository.get_payment_by_external_ref(snapshot.external_ref)
        if payment is None:
            logger.info("No local payment for %s; nothing to update", snapshot.external_ref)
            return ReconcileOutcome.IGNORED
        settled = self._settle_payment(payment, snapshot.status, occurred_at=self._occurred_at(event))
        return ReconcileOutcome.APPLIED if settled else ReconcileOutcome.IGNORED

    def _invoice_subscription(self, snapshot: InvoiceSnapshot) -> Subscription:
        subscription = self.repository.get_subscription_by_external_id(snapshot.external_subscription_id)
        if subscription is not None:
            return subscription
        if snapshot.user_id:
            raise EventOutOfOrder(
                f"Invoice {snapshot.external_invoice_id} arrived before subscription "
                f"{snapshot.external_subscription_id}"
            )
        raise ReconciliationError(
            f"Invoice {snapshot.external_invoice_id} references unknown subscription "
            f"{snapshot.external_subscription_id}"
        )

    def _insert_paid_payment(self, payment: Payment, *, occurred_at: datetime) -> ReconcileOutcome:
        stored = self.repository.insert_payment_if_absent(payment)
        if stored is not None:
            self._payment_received(stored)
            return ReconcileOutcome.APPLIED

        existing = self.repository.get_payment_by_external_ref(payment.external_ref)
        if existing is None:
            raise LedgerUnavailable(f"Payment for {payment.external_ref} could not be recorded")
        logger.info("Payment for %s was recorded concurrently as %s", payment.external_ref, existing.payment_id)
        settled = self._settle_payment(
            existing,
            PaymentStatus.PAID,
            occurred_at=occurred_at,
            external_payment_ref=payment.external_payment_ref,
        )
        return ReconcileOutcome.APPLIED if settled else ReconcileOutcome.IGNORED

    def _record_cycle_payment(
        self,
        subscription: Subscription,
        *,
        status: PaymentStatus,
        amount: Decimal,
        month: str,
        external_ref: Optional[str],
        occurred_at: datetime,
        external_payment_ref: Optional[str] = None,
        invoice_number: Optional[str] = None,
        invoice_url: Optional[str] = None,
    ) -> Optional[Payment]:
        """Upsert the payment for one subscription cycle.

        Returns ``None`` when the cycle was already settled.
        """

        existing = self.repository.get_cycle_payment(subscription.subscription_id, month)
        if existing is not None and (existing.status == status or not existing.can_transition_to(status)):
            logger.info(
                "Cycle %s of subscription %s already %s",
                month,
                subscription.subscription_id,
                existing.status.value,
            )
            return None

        paid_at = occurred_at if status == PaymentStatus.PAID else None
        candidate = Payment(
            payment_id=f"pay_{uuid4().hex}",
            user_id=subscription.user_id,
            amount=amount,
            currency=subscription.currency,
            payment_type=PaymentType.SUBSCRIPTION,
            status=status,
            description=f"{PLAN_CATALOG[subscription.plan].display_name} subscription {month}",
            subscription_id=subscription.subscription_id,
            subscription_month=month,
            provider=subscription.provider,
            external_ref=external_ref,
            external_payment_ref=external_payment_ref,
            invoice_number=invoice_number,
            invoice_url=invoice_url,
            paid_at=paid_at,
        )
        stored = self.repository.upsert_cycle_payment(candidate)
        if stored.status != status:
            logger.info(
                "Cycle %s of subscription %s settled concurrently as %s",
                month,
                subscription.subscription_id,
                stored.status.value,
            )
            return None
        if status == PaymentStatus.PAID:
            self._payment_received(stored)
        else:
            self._payment_failed(stored)
        return stored

    def _settle_payment(
        self,
        payment: Payment,
        status: PaymentStatus,
        *,
        occurred_at: datetime,
        external_payment_ref: Optional[str] = None,
    ) -> Optional[Payment]:
        """Move ``payment`` to ``status`` if the transition is allowed."""

        for _ in range(self.max_conflict_retries):
            if payment.status == status or not payment.can_transition_to(status):
                logger.info(
                    "Payment %s stays %s (requested %s)",
                    payment.payment_id,
                    payment.status.value,
                    status.value,
                )
                return None
            updated = self.repository.update_payment_status(
                payment.payment_id,
                expected_status=payment.status,
                status=status,
                paid_at=occurred_at if status == PaymentStatus.PAID else None,
                external_payment_ref=external_payment_ref,
            )
            if updated is None:
                reloaded = self.repository.get_payment(payment.payment_id)
                if reloaded is None:
                    raise ReconciliationError(f"Payment {payment.payment_id} disappeared")
                payment = reloaded
                continue

            if status == PaymentStatus.PAID:
                self._payment_received(updated)
                if updated.payment_type == PaymentType.SUBSCRIPTION and updated.provider == BillingProvider.INVOICING:
                    self._activate_invoiced_subscription(updated, occurred_at)
            elif status == PaymentStatus.FAILED:
                self._payment_failed(updated)
            else:
                self._audit(BillingAuditEventType.PAYMENT_REFUNDED, payment=updated)
            return updated
        raise LedgerUnavailable("Too many concurrent updates to payment")

    def _payment_received(self, payment: Payment) -> None:
        self.notifier.notify_payment_received(payment)
        self._audit(BillingAuditEventType.PAYMENT_RECEIVED, payment=payment)

    def _payment_failed(self, payment: Payment) -> None:
        self.notifier.notify_payment_failed(payment)
        self._audit(BillingAuditEventType.PAYMENT_FAILED, payment=payment)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _occurred_at(self, event: ExternalEvent) -> datetime:
        return event.occurred_at or event.received_at or self.clock()

    def _audit(
        self,
        event_type: BillingAuditEventType,
        *,
        subscription: Optional[Subscription] = None,
        payment: Optional[Payment] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        audit = BillingAuditEvent(
            event_type=event_type,
            user_id=(subscription.user_id if subscription else payment.user_id if payment else None),
            subscription_id=(
                subscription.subscription_id if subscription else payment.subscription_id if payment else None
            ),
            payment_id=payment.payment_id if payment else None,
            metadata=metadata or {},
            occurred_at=self.clock(),
        )
        self.repository.record_audit_event(audit)
        self.event_logger.log(audit)

    def _record_failure(self, event: ExternalEvent, exc: ReconciliationError) -> None:
        logger.error(
            "Reconciliation failed for %s: %s",
            event.idempotency_key,
            exc.message,
            extra={"event_type": event.event_type.value, "raw_type": event.raw_type},
        )
        self._audit(
            BillingAuditEventType.RECONCILIATION_FAILED,
            metadata={
                "provider": event.provider.value,
                "external_event_id": event.external_event_id,
                "event_type": event.event_type.value,
                "reason": exc.message,
            },
        )


__all__ = [
    "BillingEventLogger",
    "BillingNotifier",
    "EventReconciler",
    "ReconcileOutcome",
    "map_provider_status",
]
