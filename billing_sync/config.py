"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional
import os


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the billing providers and reconciliation."""

    app_base_url: str
    currency: str
    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    stripe_webhook_tolerance: int
    stripe_price_ids: Dict[str, str]
    myob_client_id: Optional[str]
    myob_client_secret: Optional[str]
    myob_redirect_uri: Optional[str]
    myob_business_id: Optional[str]
    myob_webhook_secret: Optional[str]
    myob_api_base_url: str
    state_secret: str
    provider_timeout_seconds: float
    webhook_max_attempts: int
    webhook_backoff_seconds: float
    db: Dict[str, object] = field(default_factory=dict)

    @property
    def is_stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def is_myob_configured(self) -> bool:
        return bool(self.myob_client_id and self.myob_client_secret and self.myob_business_id)


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


_PRICE_PREFIX = "STRIPE_PRICE_"


def _load_price_ids(env_mapping: Mapping[str, str]) -> Dict[str, str]:
    # STRIPE_PRICE_PRO_MONTHLY=price_123 -> {"PRO_MONTHLY": "price_123"}
    prices: Dict[str, str] = {}
    for key, value in env_mapping.items():
        if not key.startswith(_PRICE_PREFIX):
            continue
        price_id = _optional(value)
        if price_id:
            prices[key[len(_PRICE_PREFIX):].upper()] = price_id
    return prices


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    app_base_url = env_mapping.get("APP_BASE_URL", "http://localhost:3000")
    currency = (env_mapping.get("BILLING_CURRENCY") or "NZD").strip().upper()

    timeout = _to_float(env_mapping.get("PROVIDER_TIMEOUT_SECONDS"), default=15.0)
    if timeout <= 0:
        raise ValueError("PROVIDER_TIMEOUT_SECONDS must be positive")

    max_attempts = max(1, _to_int(env_mapping.get("WEBHOOK_MAX_ATTEMPTS"), default=3))
    backoff_seconds = max(0.0, _to_float(env_mapping.get("WEBHOOK_RETRY_BACKOFF"), default=0.5))

    db = dict(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        dbname=env_mapping.get("DB_NAME", "billing_db"),
        user=env_mapping.get("DB_USER", "billing_user"),
        password=env_mapping.get("DB_PASSWORD", "billing_pass"),
        connect_timeout=max(0, _to_int(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5)),
    )

    return BillingConfig(
        app_base_url=app_base_url.rstrip("/"),
        currency=currency,
        stripe_secret_key=_optional(env_mapping.get("STRIPE_SECRET_KEY")),
        stripe_webhook_secret=_optional(env_mapping.get("STRIPE_WEBHOOK_SECRET")),
        stripe_webhook_tolerance=_to_int(env_mapping.get("STRIPE_WEBHOOK_TOLERANCE"), default=300),
        stripe_price_ids=_load_price_ids(env_mapping),
        myob_client_id=_optional(env_mapping.get("MYOB_CLIENT_ID")),
        myob_client_secret=_optional(env_mapping.get("MYOB_CLIENT_SECRET")),
        myob_redirect_uri=_optional(env_mapping.get("MYOB_REDIRECT_URI")),
        myob_business_id=_optional(env_mapping.get("MYOB_BUSINESS_ID")),
        myob_webhook_secret=_optional(env_mapping.get("MYOB_WEBHOOK_SECRET")),
        myob_api_base_url=(
            env_mapping.get("MYOB_API_BASE_URL") or "https://api.myob.com/accountright"
        ).rstrip("/"),
        state_secret=env_mapping.get("BILLING_STATE_SECRET", "dev-state-secret-change-me"),
        provider_timeout_seconds=timeout,
        webhook_max_attempts=max_attempts,
        webhook_backoff_seconds=backoff_seconds,
        db=db,
    )


__all__ = ["BillingConfig", "load_billing_config"]
