"""Webhook entry point: verify, normalize and hand events to the reconciler."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from fastapi import status

from .adapters import ProviderAdapter
from .exceptions import (
    EventOutOfOrder,
    InvalidInput,
    LedgerUnavailable,
    ProviderNotConfigured,
    ProviderUnavailable,
    ReconciliationError,
    SignatureInvalid,
)
from .models import BillingProvider
from .reconciler import EventReconciler

logger = logging.getLogger("billing")

SIGNATURE_HEADERS: Dict[BillingProvider, str] = {
    BillingProvider.CARD_PAYMENT: "stripe-signature",
    BillingProvider.INVOICING: "x-myob-signature",
}


@dataclass(frozen=True)
class WebhookAck:
    """HTTP status and body returned to the delivering provider."""

    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


def _parse_provider(value: str) -> Optional[BillingProvider]:
    normalized = (value or "").strip().lower()
    for provider in BillingProvider:
        if provider.value == normalized:
            return provider
    return None


@dataclass(slots=True)
class WebhookIngress:
    """Turns raw provider callbacks into acknowledgements.

    A 2xx is returned only once the event is durably applied, recognised as a
    duplicate, or judged permanently unprocessable. Transient failures return
    500 so the provider redelivers.
    """

    adapters: Mapping[BillingProvider, ProviderAdapter]
    reconciler: EventReconciler

    def signature_header(self, provider: str) -> Optional[str]:
        parsed = _parse_provider(provider)
        return SIGNATURE_HEADERS.get(parsed) if parsed else None

    def receive(self, provider: str, raw_body: bytes, signature: Optional[str]) -> WebhookAck:
        parsed = _parse_provider(provider)
        adapter = self.adapters.get(parsed) if parsed else None
        if adapter is None:
            return WebhookAck(status.HTTP_404_NOT_FOUND, {"error": "unknown_provider"})
        if not adapter.is_configured():
            return WebhookAck(status.HTTP_503_SERVICE_UNAVAILABLE, {"error": "provider_not_configured"})

        try:
            event = adapter.verify_webhook(raw_body, signature)
        except SignatureInvalid as exc:
            logger.warning(
                "Rejected %s webhook: %s",
                parsed.value,
                exc.message,
                extra={"provider": parsed.value},
            )
            return WebhookAck(status.HTTP_401_UNAUTHORIZED, {"error": exc.code})
        except ProviderNotConfigured as exc:
            logger.error("Cannot verify %s webhook: %s", parsed.value, exc.message)
            return WebhookAck(status.HTTP_503_SERVICE_UNAVAILABLE, {"error": exc.code})
        except InvalidInput as exc:
            logger.warning("Malformed %s webhook: %s", parsed.value, exc.message)
            return WebhookAck(status.HTTP_400_BAD_REQUEST, {"error": exc.code})

        try:
            outcome = self.reconciler.apply(event, retry_transient=True)
        except ReconciliationError as exc:
            logger.error(
                "Acknowledged %s without applying it: %s",
                event.idempotency_key,
                exc.message,
                extra={"event_type": event.event_type.value},
            )
            return WebhookAck(status.HTTP_200_OK, {"received": True, "outcome": "failed"})
        except EventOutOfOrder as exc:
            return WebhookAck(status.HTTP_500_INTERNAL_SERVER_ERROR, {"error": exc.code})
        except (LedgerUnavailable, ProviderUnavailable) as exc:
            logger.error(
                "Transient failure applying %s; asking provider to redeliver: %s",
                event.idempotency_key,
                exc.message,
            )
            return WebhookAck(status.HTTP_500_INTERNAL_SERVER_ERROR, {"error": exc.code})

        return WebhookAck(status.HTTP_200_OK, {"received": True, "outcome": outcome.value})


__all__ = ["SIGNATURE_HEADERS", "WebhookAck", "WebhookIngress"]
