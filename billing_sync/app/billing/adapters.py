"""Provider adapter contract shared by the card-payment and invoicing integrations."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Protocol

from .models import (
    BillingProvider,
    BillingUser,
    CancellationMode,
    CheckoutSession,
    CheckoutStatus,
    ExternalEvent,
    InvoiceResult,
    ItemSpec,
    ProviderPaymentStatus,
    ProviderToken,
)


class ProviderAdapter(Protocol):
    """Thin typed wrapper around one external billing provider.

    Adapters only talk to their provider. They never read or write the
    ledger; the reconciler owns every ledger mutation.
    """

    provider: BillingProvider

    def is_configured(self) -> bool:
        ...

    def create_checkout(self, user: BillingUser, item: ItemSpec) -> CheckoutSession:
        ...

    def create_invoice(self, user: BillingUser, item: ItemSpec) -> InvoiceResult:
        ...

    def cancel_subscription(self, external_ref: str, mode: CancellationMode) -> None:
        ...

    def resume_subscription(self, external_ref: str) -> None:
        ...

    def fetch_payment_status(self, external_ref: str) -> ProviderPaymentStatus:
        ...

    def verify_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> ExternalEvent:
        ...

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        ...

    def get_checkout_status(self, session_id: str) -> CheckoutStatus:
        ...


class AuthorizingAdapter(ProviderAdapter, Protocol):
    """Adapter whose provider access is granted through an OAuth flow."""

    def authorization_url(self, state: str) -> str:
        ...

    def has_credentials(self) -> bool:
        ...

    def exchange_code(self, code: str, *, linked_user_id: Optional[str] = None) -> ProviderToken:
        ...


def from_minor_units(value: object) -> Decimal:
    """Convert an integer amount in cents into a Decimal in major units."""

    if value is None:
        return Decimal("0")
    return (Decimal(int(value)) / Decimal(100)).quantize(Decimal("0.01"))


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def from_timestamp(value: object) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


__all__ = [
    "AuthorizingAdapter",
    "ProviderAdapter",
    "from_minor_units",
    "from_timestamp",
    "to_minor_units",
]
