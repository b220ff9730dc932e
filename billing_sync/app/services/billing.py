"""Application wiring for the billing service."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Dict

from ... import app_context
from ...config import BillingConfig, load_billing_config
from ..billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingNotifier,
    BillingProvider,
    BillingService,
    EventReconciler,
    Payment,
    Subscription,
    WebhookIngress,
)
from ..billing.adapters import ProviderAdapter
from ..billing.myob_adapter import MyobAdapter
from ..billing.repository import PostgresBillingRepository, PostgresTokenStore
from ..billing.stripe_adapter import StripeAdapter


logger = logging.getLogger("billing")


class LoggingBillingNotifier(BillingNotifier):
    """Notifier that records billing notifications to the application logger."""

    def notify_subscription_started(self, subscription: Subscription) -> None:
        logger.info(
            "Subscription started %s user=%s plan=%s cycle=%s",
            subscription.subscription_id,
            subscription.user_id,
            subscription.plan.value,
            subscription.billing_cycle.value,
        )

    def notify_cancellation_scheduled(self, subscription: Subscription) -> None:
        logger.info(
            "Subscription %s will end at %s",
            subscription.subscription_id,
            subscription.current_period_end.isoformat(),
        )

    def notify_subscription_ended(self, subscription: Subscription) -> None:
        logger.warning(
            "Subscription ended %s user=%s",
            subscription.subscription_id,
            subscription.user_id,
        )

    def notify_payment_received(self, payment: Payment) -> None:
        logger.info(
            "Payment received %s user=%s amount=%s %s",
            payment.payment_id,
            payment.user_id,
            payment.amount,
            payment.currency,
        )

    def notify_payment_failed(self, payment: Payment) -> None:
        logger.warning(
            "Payment failure %s user=%s amount=%s %s",
            payment.payment_id,
            payment.user_id,
            payment.amount,
            payment.currency,
        )


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s subscription=%s payment=%s user=%s metadata=%s",
            event.event_type.value,
            event.subscription_id,
            event.payment_id,
            event.user_id,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


def build_adapters(config: BillingConfig) -> Dict[BillingProvider, ProviderAdapter]:
    token_store = PostgresTokenStore()
    return {
        BillingProvider.CARD_PAYMENT: StripeAdapter(config),
        BillingProvider.INVOICING: MyobAdapter(config, token_store),
    }


@lru_cache(maxsize=1)
def get_reconciler() -> EventReconciler:
    config = get_billing_config()
    return EventReconciler(
        repository=PostgresBillingRepository(),
        notifier=app_context.get_billing_notifier() or LoggingBillingNotifier(),
        event_logger=LoggingBillingEventLogger(),
        max_attempts=config.webhook_max_attempts,
        backoff_seconds=config.webhook_backoff_seconds,
        currency=config.currency,
    )


@lru_cache(maxsize=1)
def _get_adapters() -> Dict[BillingProvider, ProviderAdapter]:
    return build_adapters(get_billing_config())


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    config = get_billing_config()
    service = BillingService(
        repository=PostgresBillingRepository(),
        adapters=_get_adapters(),
        reconciler=get_reconciler(),
        config=config,
    )
    return service


@lru_cache(maxsize=1)
def get_webhook_ingress() -> WebhookIngress:
    return WebhookIngress(adapters=_get_adapters(), reconciler=get_reconciler())


__all__ = [
    "LoggingBillingEventLogger",
    "LoggingBillingNotifier",
    "build_adapters",
    "get_billing_config",
    "get_billing_service",
    "get_reconciler",
    "get_webhook_ingress",
]
