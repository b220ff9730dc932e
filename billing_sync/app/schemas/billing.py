"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    InvoiceResult,
    Subscription,
    SyncResult,
)
from ..billing.models import CheckoutSession, CheckoutStatus, InvoicingAuthStatus, Payment


class CheckoutRequest(BaseModel):
    # Values stay plain strings so unknown catalog keys surface as invalid_input.
    payment_type: str = Field(alias="type")
    package_type: Optional[str] = Field(alias="packageType", default=None)
    plan: Optional[str] = Field(alias="planType", default=None)
    billing_cycle: Optional[str] = Field(alias="billingCycle", default=None)
    job_id: Optional[str] = Field(alias="jobId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class InvoiceRequest(CheckoutRequest):
    pass


class CheckoutResponse(BaseModel):
    checkout_url: str = Field(alias="checkoutUrl")
    session_id: str = Field(alias="sessionId")
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_session(cls, session: CheckoutSession) -> "CheckoutResponse":
        return cls(
            checkout_url=session.checkout_url,
            session_id=session.external_session_id,
            expires_at=session.expires_at,
        )


class CheckoutStatusResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    status: str
    payment_status: str = Field(alias="paymentStatus")
    customer_email: Optional[str] = Field(alias="customerEmail", default=None)
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_status(cls, status: CheckoutStatus) -> "CheckoutStatusResponse":
        return cls(
            session_id=status.session_id,
            status=status.status,
            payment_status=status.payment_status,
            customer_email=status.customer_email,
            metadata=status.metadata,
        )


class PortalSessionRequest(BaseModel):
    return_url: Optional[str] = Field(alias="returnUrl", default=None)

    model_config = ConfigDict(populate_by_name=True)


class PortalSessionResponse(BaseModel):
    url: str

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionResponse(BaseModel):
    subscription_id: str = Field(alias="subscriptionId")
    plan: str
    status: str
    billing_cycle: str = Field(alias="billingCycle")
    price_per_cycle: Decimal = Field(alias="pricePerCycle")
    currency: str
    provider: str
    current_period_start: datetime = Field(alias="currentPeriodStart")
    current_period_end: datetime = Field(alias="currentPeriodEnd")
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd")
    cancelled_at: Optional[datetime] = Field(alias="cancelledAt", default=None)
    projects_used_this_period: int = Field(alias="projectsUsedThisPeriod")
    projects_limit: int = Field(alias="projectsLimit")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            subscription_id=subscription.subscription_id,
            plan=subscription.plan.value,
            status=subscription.status.value,
            billing_cycle=subscription.billing_cycle.value,
            price_per_cycle=subscription.price_per_cycle,
            currency=subscription.currency,
            provider=subscription.provider.value,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            cancelled_at=subscription.cancelled_at,
            projects_used_this_period=subscription.projects_used_this_period,
            projects_limit=subscription.projects_limit,
        )


class SubscriptionEnvelope(BaseModel):
    subscription: Optional[SubscriptionResponse] = None

    model_config = ConfigDict(populate_by_name=True)


class InvoiceResponse(BaseModel):
    invoice_id: str = Field(alias="invoiceId")
    invoice_number: str = Field(alias="invoiceNumber")
    payment_url: str = Field(alias="paymentUrl")
    total_amount: Decimal = Field(alias="totalAmount")
    currency: str
    payment_id: Optional[str] = Field(alias="paymentId", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: InvoiceResult) -> "InvoiceResponse":
        return cls(
            invoice_id=result.invoice_id,
            invoice_number=result.invoice_number,
            payment_url=result.payment_url,
            total_amount=result.total_amount,
            currency=result.currency,
            payment_id=result.payment_id,
        )


class PaymentStatusResponse(BaseModel):
    payment_id: str = Field(alias="paymentId")
    status: str
    is_paid: bool = Field(alias="isPaid")
    amount: Decimal
    currency: str
    description: str
    invoice_number: Optional[str] = Field(alias="invoiceNumber", default=None)
    invoice_url: Optional[str] = Field(alias="invoiceUrl", default=None)
    paid_at: Optional[datetime] = Field(alias="paidAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentStatusResponse":
        return cls(
            payment_id=payment.payment_id,
            status=payment.status.value,
            is_paid=payment.is_paid,
            amount=payment.amount,
            currency=payment.currency,
            description=payment.description,
            invoice_number=payment.invoice_number,
            invoice_url=payment.invoice_url,
            paid_at=payment.paid_at,
        )


class SyncResponse(BaseModel):
    payment_id: str = Field(alias="paymentId")
    status: str
    is_paid: bool = Field(alias="isPaid")
    synced: bool

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: SyncResult) -> "SyncResponse":
        return cls(
            payment_id=result.payment_id,
            status=result.status.value,
            is_paid=result.is_paid,
            synced=result.synced,
        )


class InvoicingAuthStatusResponse(BaseModel):
    is_configured: bool = Field(alias="isConfigured")
    is_authenticated: bool = Field(alias="isAuthenticated")
    auth_url: Optional[str] = Field(alias="authUrl", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_status(cls, status: InvoicingAuthStatus) -> "InvoicingAuthStatusResponse":
        return cls(
            is_configured=status.is_configured,
            is_authenticated=status.is_authenticated,
            auth_url=status.auth_url,
        )
