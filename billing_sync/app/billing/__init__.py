"""Billing domain package synchronizing the local ledger with Stripe and MYOB."""

from .exceptions import (
    BillingError,
    EventOutOfOrder,
    InvalidInput,
    InvalidItem,
    InvalidState,
    LedgerUnavailable,
    NotFound,
    ProviderNotConfigured,
    ProviderUnavailable,
    ReconciliationError,
    SignatureInvalid,
    Unauthenticated,
    Unauthorized,
)
from .ingress import WebhookAck, WebhookIngress
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingCycle,
    BillingProvider,
    BillingUser,
    CheckoutSession,
    ExternalEvent,
    ExternalEventType,
    InvoiceResult,
    PackageType,
    Payment,
    PaymentStatus,
    PaymentType,
    PlanType,
    Subscription,
    SubscriptionStatus,
    SyncResult,
)
from .reconciler import BillingEventLogger, BillingNotifier, EventReconciler, ReconcileOutcome
from .repository import BillingRepository, ProviderTokenStore
from .service import BillingService

__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingCycle",
    "BillingError",
    "BillingEventLogger",
    "BillingNotifier",
    "BillingProvider",
    "BillingRepository",
    "BillingService",
    "BillingUser",
    "CheckoutSession",
    "EventOutOfOrder",
    "EventReconciler",
    "ExternalEvent",
    "ExternalEventType",
    "InvalidInput",
    "InvalidItem",
    "InvalidState",
    "InvoiceResult",
    "LedgerUnavailable",
    "NotFound",
    "PackageType",
    "Payment",
    "PaymentStatus",
    "PaymentType",
    "PlanType",
    "ProviderNotConfigured",
    "ProviderTokenStore",
    "ProviderUnavailable",
    "ReconcileOutcome",
    "ReconciliationError",
    "SignatureInvalid",
    "Subscription",
    "SubscriptionStatus",
    "SyncResult",
    "Unauthenticated",
    "Unauthorized",
    "WebhookAck",
    "WebhookIngress",
]
