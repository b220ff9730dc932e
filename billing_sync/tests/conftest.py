"""Shared fakes and fixtures for the billing tests."""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import count
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from billing_sync.app.billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingNotifier,
    BillingRepository,
    BillingService,
    EventReconciler,
    ProviderTokenStore,
)
from billing_sync.app.billing.adapters import ProviderAdapter
from billing_sync.app.billing.catalog import (
    get_package_definition,
    get_plan_definition,
    parse_billing_cycle,
)
from billing_sync.app.billing.exceptions import (
    BillingError,
    InvalidInput,
    LedgerUnavailable,
    SignatureInvalid,
)
from billing_sync.app.billing.models import (
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
    Payment,
    PaymentSnapshot,
    PaymentStatus,
    PaymentType,
    PlanType,
    ProviderPaymentStatus,
    ProviderToken,
    Subscription,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from billing_sync.config import BillingConfig, load_billing_config

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class InMemoryBillingRepository(BillingRepository):
    def __init__(self) -> None:
        self.subscriptions: Dict[str, Subscription] = {}
        self.payments: Dict[str, Payment] = {}
        self.processed_events: Dict[Tuple[BillingProvider, str], str] = {}
        self.audit_events: List[BillingAuditEvent] = []
        self.outages = 0
        self.before_insert: Optional[Callable[[], None]] = None

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self.subscriptions.get(subscription_id)

    def get_subscription_by_user(self, user_id: str) -> Optional[Subscription]:
        for subscription in self.subscriptions.values():
            if subscription.user_id == user_id:
                return subscription
        return None

    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        for subscription in self.subscriptions.values():
            if subscription.external_subscription_id == external_subscription_id:
                return subscription
        return None

    def insert_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        if self.get_subscription_by_user(subscription.user_id) is not None:
            return None
        self.subscriptions[subscription.subscription_id] = subscription
        return subscription

    def update_subscription(self, subscription: Subscription, *, expected_version: int) -> Optional[Subscription]:
        current = self.subscriptions.get(subscription.subscription_id)
        if current is None or current.version != expected_version:
            return None
        stored = subscription.model_copy(
            update={"version": expected_version + 1, "updated_at": datetime.now(timezone.utc)}
        )
        self.subscriptions[stored.subscription_id] = stored
        return stored

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self.payments.get(payment_id)

    def get_payment_by_external_ref(self, external_ref: str) -> Optional[Payment]:
        for payment in self.payments.values():
            if external_ref in (payment.external_ref, payment.external_payment_ref):
                return payment
        return None

    def get_cycle_payment(self, subscription_id: str, subscription_month: str) -> Optional[Payment]:
        for payment in self.payments.values():
            if payment.subscription_id == subscription_id and payment.subscription_month == subscription_month:
                return payment
        return None

    def create_payment(self, payment: Payment) -> Payment:
        self.payments[payment.payment_id] = payment
        return payment

    def insert_payment_if_absent(self, payment: Payment) -> Optional[Payment]:
        if self.before_insert is not None:
            hook, self.before_insert = self.before_insert, None
            hook()
        for existing in self.payments.values():
            if (
                existing.provider == payment.provider
                and existing.external_ref == payment.external_ref
                and existing.subscription_month is None
            ):
                return None
        self.payments[payment.payment_id] = payment
        return payment

    def upsert_cycle_payment(self, payment: Payment) -> Payment:
        for existing in self.payments.values():
            if (
                existing.subscription_id == payment.subscription_id
                and existing.subscription_month == payment.subscription_month
            ):
                if existing.status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
                    return existing
                merged = existing.model_copy(
                    update={
                        "status": payment.status,
                        "amount": payment.amount,
                        "currency": payment.currency,
                        "external_ref": payment.external_ref or existing.external_ref,
                        "external_payment_ref": payment.external_payment_ref or existing.external_payment_ref,
                        "invoice_number": payment.invoice_number or existing.invoice_number,
                        "invoice_url": payment.invoice_url or existing.invoice_url,
                        "paid_at": payment.paid_at or existing.paid_at,
                    }
                )
                self.payments[merged.payment_id] = merged
                return merged
        self.payments[payment.payment_id] = payment
        return payment

    def update_payment_status(
        self,
        payment_id: str,
        *,
        expected_status: PaymentStatus,
        status: PaymentStatus,
        paid_at: Optional[datetime] = None,
        external_payment_ref: Optional[str] = None,
    ) -> Optional[Payment]:
        current = self.payments.get(payment_id)
        if current is None or current.status != expected_status:
            return None
        updated = current.model_copy(
            update={
                "status": status,
                "paid_at": paid_at or current.paid_at,
                "external_payment_ref": external_payment_ref or current.external_payment_ref,
            }
        )
        self.payments[payment_id] = updated
        return updated

    def has_processed_event(self, provider: BillingProvider, external_event_id: str) -> bool:
        if self.outages > 0:
            self.outages -= 1
            raise LedgerUnavailable("Billing ledger is unavailable")
        return (provider, external_event_id) in self.processed_events

    def mark_event_processed(self, event: ExternalEvent, *, outcome: str) -> bool:
        key = (event.provider, event.external_event_id)
        if key in self.processed_events:
            return False
        self.processed_events[key] = outcome
        return True

    def record_audit_event(self, event: BillingAuditEvent) -> None:
        self.audit_events.append(event)

    def payments_for(self, user_id: str) -> List[Payment]:
        return [payment for payment in self.payments.values() if payment.user_id == user_id]


class InMemoryTokenStore(ProviderTokenStore):
    def __init__(self) -> None:
        self.tokens: Dict[Tuple[BillingProvider, str], ProviderToken] = {}

    def get_token(self, provider: BillingProvider, account_id: str) -> Optional[ProviderToken]:
        return self.tokens.get((provider, account_id))

    def save_token(self, token: ProviderToken) -> ProviderToken:
        self.tokens[(token.provider, token.account_id)] = token
        return token


class RecordingNotifier(BillingNotifier):
    def __init__(self) -> None:
        self.started: List[Subscription] = []
        self.cancellations: List[Subscription] = []
        self.ended: List[Subscription] = []
        self.received: List[Payment] = []
        self.failed: List[Payment] = []

    def notify_subscription_started(self, subscription: Subscription) -> None:
        self.started.append(subscription)

    def notify_cancellation_scheduled(self, subscription: Subscription) -> None:
        self.cancellations.append(subscription)

    def notify_subscription_ended(self, subscription: Subscription) -> None:
        self.ended.append(subscription)

    def notify_payment_received(self, payment: Payment) -> None:
        self.received.append(payment)

    def notify_payment_failed(self, payment: Payment) -> None:
        self.failed.append(payment)


class RecordingEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)


class FakeAdapter(ProviderAdapter):
    """Provider double that records every call it receives."""

    def __init__(self, provider: BillingProvider, *, configured: bool = True) -> None:
        self.provider = provider
        self.configured = configured
        self.calls: List[Tuple[str, tuple]] = []
        self.payment_statuses: Dict[str, PaymentStatus] = {}
        self.checkout_owner: Optional[str] = None
        self.error: Optional[BillingError] = None
        self._ids = count(1)

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        if self.error is not None:
            raise self.error

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def is_configured(self) -> bool:
        return self.configured

    def create_checkout(self, user: BillingUser, item: ItemSpec) -> CheckoutSession:
        self._record("create_checkout", user, item)
        number = next(self._ids)
        return CheckoutSession(
            checkout_url=f"https://pay.test/checkout/{number}",
            external_session_id=f"cs_test_{number}",
        )

    def create_invoice(self, user: BillingUser, item: ItemSpec) -> InvoiceResult:
        self._record("create_invoice", user, item)
        number = next(self._ids)
        if item.payment_type == PaymentType.ONE_TIME:
            total = get_package_definition(item.package_type).price
        else:
            total = get_plan_definition(item.plan).price_for(parse_billing_cycle(item.billing_cycle))
        return InvoiceResult(
            invoice_id=f"inv-uid-{number}",
            invoice_number=f"INV-{number:05d}",
            payment_url=f"https://pay.test/invoice/{number}",
            total_amount=total,
            currency="NZD",
        )

    def cancel_subscription(self, external_ref: str, mode: CancellationMode) -> None:
        self._record("cancel_subscription", external_ref, mode)

    def resume_subscription(self, external_ref: str) -> None:
        self._record("resume_subscription", external_ref)

    def fetch_payment_status(self, external_ref: str) -> ProviderPaymentStatus:
        self._record("fetch_payment_status", external_ref)
        status = self.payment_statuses.get(external_ref, PaymentStatus.PENDING)
        return ProviderPaymentStatus(external_ref=external_ref, status=status, raw_status=status.value.lower())

    def verify_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> ExternalEvent:
        self._record("verify_webhook", raw_body, signature_header)
        if signature_header != "valid":
            raise SignatureInvalid("signature mismatch")
        body = json.loads(raw_body)
        if not body.get("id"):
            raise InvalidInput("event has no id")
        return ExternalEvent(
            provider=self.provider,
            event_type=ExternalEventType(body["type"]),
            external_event_id=body["id"],
            payload=body.get("payload") or {},
            raw_type=body["type"],
            occurred_at=T0,
        )

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        self._record("create_portal_session", customer_ref, return_url)
        return f"https://pay.test/portal/{customer_ref}"

    def get_checkout_status(self, session_id: str) -> CheckoutStatus:
        self._record("get_checkout_status", session_id)
        metadata = {"userId": self.checkout_owner} if self.checkout_owner else {}
        return CheckoutStatus(session_id=session_id, status="complete", payment_status="paid", metadata=metadata)


class FakeInvoicingAdapter(FakeAdapter):
    def __init__(self, *, configured: bool = True) -> None:
        super().__init__(BillingProvider.INVOICING, configured=configured)
        self.linked = False
        self.exchanged: List[Tuple[str, Optional[str]]] = []

    def authorization_url(self, state: str) -> str:
        return f"https://auth.test/authorize?state={state}"

    def has_credentials(self) -> bool:
        return self.linked

    def exchange_code(self, code: str, *, linked_user_id: Optional[str] = None) -> ProviderToken:
        self.exchanged.append((code, linked_user_id))
        self.linked = True
        return ProviderToken(
            provider=self.provider,
            account_id="company-file",
            access_token="access",
            refresh_token="refresh",
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=20),
            linked_user_id=linked_user_id,
        )


class EventFactory:
    """Builds normalized provider events for reconciler scenarios."""

    def __init__(self) -> None:
        self._ids = count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def subscription(
        self,
        external_subscription_id: str = "sub_ext_1",
        *,
        event_type: ExternalEventType = ExternalEventType.SUBSCRIPTION_UPDATED,
        status: str = "active",
        user_id: Optional[str] = "user-1",
        plan: Optional[PlanType] = PlanType.PRO,
        billing_cycle: Optional[BillingCycle] = BillingCycle.MONTHLY,
        period_start: Optional[datetime] = T0,
        period_end: Optional[datetime] = None,
        cancel_at_period_end: bool = False,
        occurred_at: Optional[datetime] = None,
        event_id: Optional[str] = None,
    ) -> ExternalEvent:
        if period_end is None and period_start is not None:
            period_end = period_start + timedelta(days=31)
        snapshot = SubscriptionSnapshot(
            external_subscription_id=external_subscription_id,
            external_customer_id="cus_1",
            user_id=user_id,
            status=status,
            price_id="price_pro_monthly",
            plan=plan,
            billing_cycle=billing_cycle,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=cancel_at_period_end,
        )
        return ExternalEvent(
            provider=BillingProvider.CARD_PAYMENT,
            event_type=event_type,
            external_event_id=event_id or self._next_id("evt"),
            payload=snapshot.model_dump(),
            raw_type=f"customer.{event_type.value}",
            occurred_at=occurred_at or period_start or T0,
        )

    def invoice_paid(
        self,
        external_invoice_id: str = "in_1",
        *,
        provider: BillingProvider = BillingProvider.CARD_PAYMENT,
        external_subscription_id: Optional[str] = "sub_ext_1",
        amount: Decimal = Decimal("199.00"),
        period_start: Optional[datetime] = T0,
        user_id: Optional[str] = None,
        event_type: ExternalEventType = ExternalEventType.INVOICE_PAID,
        occurred_at: Optional[datetime] = None,
        event_id: Optional[str] = None,
    ) -> ExternalEvent:
        paid = event_type == ExternalEventType.INVOICE_PAID
        snapshot = InvoiceSnapshot(
            external_invoice_id=external_invoice_id,
            external_subscription_id=external_subscription_id,
            user_id=user_id,
            amount_paid=amount if paid else Decimal("0"),
            amount_due=Decimal("0") if paid else amount,
            invoice_number="INV-0001",
            period_start=period_start,
            period_end=(period_start + timedelta(days=31)) if period_start else None,
        )
        return ExternalEvent(
            provider=provider,
            event_type=event_type,
            external_event_id=event_id or self._next_id("evt"),
            payload=snapshot.model_dump(),
            raw_type=event_type.value,
            occurred_at=occurred_at or period_start or T0,
        )

    def checkout(
        self,
        session_id: str = "cs_test_1",
        *,
        event_type: ExternalEventType = ExternalEventType.CHECKOUT_COMPLETED,
        payment_type: PaymentType = PaymentType.ONE_TIME,
        user_id: Optional[str] = "user-1",
        package: Optional[str] = "PROFESSIONAL",
        amount: Decimal = Decimal("199.00"),
        external_subscription_id: Optional[str] = None,
        job_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> ExternalEvent:
        snapshot = CheckoutSnapshot(
            session_id=session_id,
            user_id=user_id,
            payment_type=payment_type,
            package_type=package if payment_type == PaymentType.ONE_TIME else None,
            job_id=job_id,
            amount_total=amount,
            external_payment_ref="pi_1",
            external_subscription_id=external_subscription_id,
        )
        return ExternalEvent(
            provider=BillingProvider.CARD_PAYMENT,
            event_type=event_type,
            external_event_id=event_id or self._next_id("evt"),
            payload=snapshot.model_dump(),
            raw_type=event_type.value,
            occurred_at=T0,
        )

    def payment(
        self,
        external_ref: str,
        status: PaymentStatus,
        *,
        provider: BillingProvider = BillingProvider.CARD_PAYMENT,
        event_id: Optional[str] = None,
    ) -> ExternalEvent:
        event_type = {
            PaymentStatus.PAID: ExternalEventType.PAYMENT_SUCCEEDED,
            PaymentStatus.FAILED: ExternalEventType.PAYMENT_FAILED,
            PaymentStatus.REFUNDED: ExternalEventType.PAYMENT_REFUNDED,
        }[status]
        return ExternalEvent(
            provider=provider,
            event_type=event_type,
            external_event_id=event_id or self._next_id("evt"),
            payload=PaymentSnapshot(external_ref=external_ref, status=status).model_dump(),
            raw_type=event_type.value,
            occurred_at=T0,
        )

    def unhandled(self, raw_type: str = "customer.created") -> ExternalEvent:
        return ExternalEvent(
            provider=BillingProvider.CARD_PAYMENT,
            event_type=ExternalEventType.UNHANDLED,
            external_event_id=self._next_id("evt"),
            raw_type=raw_type,
            occurred_at=T0,
        )


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def event_logger() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def reconciler(repository, notifier, event_logger, sleeps) -> EventReconciler:
    return EventReconciler(
        repository=repository,
        notifier=notifier,
        event_logger=event_logger,
        max_attempts=3,
        backoff_seconds=0.5,
        sleep=sleeps.append,
        clock=lambda: T0,
    )


@pytest.fixture
def events() -> EventFactory:
    return EventFactory()


@pytest.fixture
def billing_config() -> BillingConfig:
    return load_billing_config(
        {
            "APP_BASE_URL": "https://portal.test/",
            "STRIPE_SECRET_KEY": "sk_test_123",
            "STRIPE_WEBHOOK_SECRET": "whsec_test",
            "STRIPE_PRICE_PRO_MONTHLY": "price_pro_monthly",
            "STRIPE_PRICE_PROFESSIONAL": "price_professional",
            "MYOB_CLIENT_ID": "myob-client",
            "MYOB_CLIENT_SECRET": "myob-secret",
            "MYOB_REDIRECT_URI": "https://portal.test/api/billing/invoicing/auth/callback",
            "MYOB_BUSINESS_ID": "company-file",
            "MYOB_WEBHOOK_SECRET": "myob-hook-secret",
            "BILLING_STATE_SECRET": "state-secret",
        }
    )


@pytest.fixture
def card_adapter() -> FakeAdapter:
    return FakeAdapter(BillingProvider.CARD_PAYMENT)


@pytest.fixture
def invoicing_adapter() -> FakeInvoicingAdapter:
    return FakeInvoicingAdapter()


@pytest.fixture
def service(repository, card_adapter, invoicing_adapter, reconciler, billing_config) -> BillingService:
    return BillingService(
        repository=repository,
        adapters={
            BillingProvider.CARD_PAYMENT: card_adapter,
            BillingProvider.INVOICING: invoicing_adapter,
        },
        reconciler=reconciler,
        config=billing_config,
    )


@pytest.fixture
def user() -> BillingUser:
    return BillingUser(id="user-1", email="partner@example.com", name="Pat Partner")


@pytest.fixture
def other_user() -> BillingUser:
    return BillingUser(id="user-2", email="other@example.com", name="Olive Other")


@pytest.fixture
def active_subscription(repository) -> Subscription:
    subscription = Subscription(
        subscription_id="sub_local_1",
        user_id="user-1",
        plan=PlanType.PRO,
        status=SubscriptionStatus.ACTIVE,
        billing_cycle=BillingCycle.MONTHLY,
        price_per_cycle=Decimal("199"),
        provider=BillingProvider.CARD_PAYMENT,
        external_subscription_id="sub_ext_1",
        external_customer_id="cus_1",
        current_period_start=T0,
        current_period_end=T0 + timedelta(days=31),
        last_event_at=T0,
    )
    repository.subscriptions[subscription.subscription_id] = subscription
    return subscription
