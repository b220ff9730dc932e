"""Domain models for the billing ledger and provider events."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlanType(str, Enum):
    """Subscription tiers offered to partners."""

    STARTER = "STARTER"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class PackageType(str, Enum):
    """One-time design packages."""

    BASIC = "BASIC"
    PROFESSIONAL = "PROFESSIONAL"
    PREMIUM = "PREMIUM"


class BillingCycle(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class SubscriptionStatus(str, Enum):
    """Lifecycle state for a local subscription."""

    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """Lifecycle state for a payment record."""

    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentType(str, Enum):
    ONE_TIME = "ONE_TIME"
    SUBSCRIPTION = "SUBSCRIPTION"


class BillingProvider(str, Enum):
    """External billing systems the ledger is synchronized with."""

    CARD_PAYMENT = "stripe"
    INVOICING = "myob"


class CancellationMode(str, Enum):
    AT_PERIOD_END = "at_period_end"
    IMMEDIATE = "immediate"


class ExternalEventType(str, Enum):
    """Normalized provider event kinds handled by the reconciler."""

    CHECKOUT_COMPLETED = "checkout.completed"
    CHECKOUT_EXPIRED = "checkout.expired"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    UNHANDLED = "unhandled"


_ALLOWED_PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PAID},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}


class Subscription(BaseModel):
    """Local source of truth for a user's subscription."""

    subscription_id: str
    user_id: str
    plan: PlanType
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    price_per_cycle: Decimal = Decimal("0")
    currency: str = "NZD"
    provider: BillingProvider = BillingProvider.CARD_PAYMENT
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    external_price_id: Optional[str] = None
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    cancelled_at: Optional[datetime] = None
    projects_used_this_period: int = Field(default=0, ge=0)
    projects_limit: int = Field(default=5, ge=0)
    last_reset_at: datetime = Field(default_factory=_utcnow)
    last_event_at: Optional[datetime] = None
    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Subscription":
        if self.current_period_end < self.current_period_start:
            raise ValueError("current_period_end must not precede current_period_start")
        if self.cancel_at_period_end and self.status == SubscriptionStatus.CANCELLED:
            raise ValueError("a cancelled subscription cannot have a pending cancellation")
        return self

    @property
    def is_cancel_pending(self) -> bool:
        return self.cancel_at_period_end and self.status != SubscriptionStatus.CANCELLED

    @property
    def is_provider_managed(self) -> bool:
        return bool(self.external_subscription_id)


class Payment(BaseModel):
    """One billable event: a package purchase or one subscription cycle."""

    payment_id: str
    user_id: str
    amount: Decimal = Field(ge=0)
    currency: str = Field(default="NZD", min_length=3, max_length=3)
    payment_type: PaymentType
    status: PaymentStatus = PaymentStatus.PENDING
    description: str = ""
    job_id: Optional[str] = None
    subscription_id: Optional[str] = None
    subscription_month: Optional[str] = None
    provider: BillingProvider = BillingProvider.CARD_PAYMENT
    external_ref: Optional[str] = None
    external_payment_ref: Optional[str] = None
    invoice_number: Optional[str] = None
    invoice_url: Optional[str] = None
    paid_at: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.PAID

    def can_transition_to(self, status: PaymentStatus) -> bool:
        return status in _ALLOWED_PAYMENT_TRANSITIONS[self.status]


class SubscriptionSnapshot(BaseModel):
    """Provider-agnostic view of an external subscription object."""

    external_subscription_id: str
    external_customer_id: Optional[str] = None
    user_id: Optional[str] = None
    status: str
    price_id: Optional[str] = None
    plan: Optional[PlanType] = None
    billing_cycle: Optional[BillingCycle] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class InvoiceSnapshot(BaseModel):
    """Provider-agnostic view of an invoice."""

    external_invoice_id: str
    external_subscription_id: Optional[str] = None
    user_id: Optional[str] = None
    amount_paid: Decimal = Decimal("0")
    amount_due: Decimal = Decimal("0")
    currency: str = "NZD"
    invoice_number: Optional[str] = None
    invoice_url: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class CheckoutSnapshot(BaseModel):
    """Provider-agnostic view of a completed or expired checkout session."""

    session_id: str
    user_id: Optional[str] = None
    payment_type: Optional[PaymentType] = None
    package_type: Optional[PackageType] = None
    plan: Optional[PlanType] = None
    billing_cycle: Optional[BillingCycle] = None
    job_id: Optional[str] = None
    amount_total: Decimal = Decimal("0")
    currency: str = "NZD"
    external_payment_ref: Optional[str] = None
    external_subscription_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class PaymentSnapshot(BaseModel):
    """Provider-agnostic view of a payment attempt or refund."""

    external_ref: str
    status: PaymentStatus
    amount: Optional[Decimal] = None
    currency: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ExternalEvent(BaseModel):
    """Normalized envelope produced by webhook verification or polling."""

    provider: BillingProvider
    event_type: ExternalEventType
    external_event_id: str
    payload: Dict[str, object] = Field(default_factory=dict)
    raw_type: Optional[str] = None
    occurred_at: Optional[datetime] = None
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @property
    def idempotency_key(self) -> str:
        return f"{self.provider.value}:{self.external_event_id}"


class ItemSpec(BaseModel):
    """Catalog item a checkout or invoice is created for."""

    payment_type: PaymentType
    package_type: Optional[PackageType] = None
    plan: Optional[PlanType] = None
    billing_cycle: Optional[BillingCycle] = None
    job_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class BillingUser(BaseModel):
    """Minimal view of the portal user the billing engine needs."""

    id: str
    email: str
    name: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class CheckoutSession(BaseModel):
    """Return value of a checkout creation request."""

    checkout_url: str
    external_session_id: str
    client_secret: Optional[str] = None
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class CheckoutStatus(BaseModel):
    session_id: str
    status: str
    payment_status: str
    customer_email: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class InvoiceResult(BaseModel):
    """Invoice created with an external provider."""

    invoice_id: str
    invoice_number: str = ""
    payment_url: str
    total_amount: Decimal
    currency: str = "NZD"
    payment_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ProviderPaymentStatus(BaseModel):
    """Result of polling a provider for the state of a payment reference."""

    external_ref: str
    status: PaymentStatus
    raw_status: str
    amount_paid: Decimal = Decimal("0")
    balance_due: Decimal = Decimal("0")

    model_config = ConfigDict(frozen=True)


class ProviderToken(BaseModel):
    """OAuth credentials persisted for an external provider account."""

    provider: BillingProvider
    account_id: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    linked_user_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    def expires_within(self, seconds: float, *, now: Optional[datetime] = None) -> bool:
        current = now or _utcnow()
        return (self.expires_at - current).total_seconds() <= seconds


class SyncResult(BaseModel):
    payment_id: str
    status: PaymentStatus
    is_paid: bool
    synced: bool = False

    model_config = ConfigDict(frozen=True)


class InvoicingAuthStatus(BaseModel):
    is_configured: bool
    is_authenticated: bool
    auth_url: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCEL_SCHEDULED = "subscription_cancel_scheduled"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    RECONCILIATION_FAILED = "reconciliation_failed"


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: BillingAuditEventType
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)
