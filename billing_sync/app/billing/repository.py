"""Persistence layer for the billing ledger."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Protocol

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .exceptions import LedgerUnavailable
from .models import (
    BillingAuditEvent,
    BillingCycle,
    BillingProvider,
    ExternalEvent,
    Payment,
    PaymentStatus,
    PaymentType,
    PlanType,
    ProviderToken,
    Subscription,
    SubscriptionStatus,
)


class BillingRepository(Protocol):
    """Ledger operations consumed by the reconciler and orchestrator."""

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_subscription_by_user(self, user_id: str) -> Optional[Subscription]:
        ...

    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        ...

    def insert_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        """Insert unless the user already has a row; ``None`` when one exists."""

    def update_subscription(self, subscription: Subscription, *, expected_version: int) -> Optional[Subscription]:
        """Compare-and-set write; ``None`` when ``expected_version`` is stale."""

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        ...

    def get_payment_by_external_ref(self, external_ref: str) -> Optional[Payment]:
        ...

    def get_cycle_payment(self, subscription_id: str, subscription_month: str) -> Optional[Payment]:
        ...

    def create_payment(self, payment: Payment) -> Payment:
        ...

    def insert_payment_if_absent(self, payment: Payment) -> Optional[Payment]:
        """Insert keyed by (provider, external_ref); ``None`` when one exists."""

    def upsert_cycle_payment(self, payment: Payment) -> Payment:
        """Upsert keyed by (subscription_id, subscription_month).

        An existing PAID or REFUNDED row is returned unchanged.
        """

    def update_payment_status(
        self,
        payment_id: str,
        *,
        expected_status: PaymentStatus,
        status: PaymentStatus,
        paid_at: Optional[datetime] = None,
        external_payment_ref: Optional[str] = None,
    ) -> Optional[Payment]:
        """Compare-and-set on the current status; ``None`` when it moved."""

    def has_processed_event(self, provider: BillingProvider, external_event_id: str) -> bool:
        ...

    def mark_event_processed(self, event: ExternalEvent, *, outcome: str) -> bool:
        ...

    def record_audit_event(self, event: BillingAuditEvent) -> None:
        ...


class ProviderTokenStore(Protocol):
    """Durable OAuth token storage keyed by provider and account."""

    def get_token(self, provider: BillingProvider, account_id: str) -> Optional[ProviderToken]:
        ...

    def save_token(self, token: ProviderToken) -> ProviderToken:
        ...


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


class _PostgresStore:
    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                    if managed:
                        connection.commit()
                except Exception:
                    if managed:
                        connection.rollback()
                    raise
                finally:
                    cursor.close()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            raise LedgerUnavailable("Billing ledger is unavailable") from exc


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        user_id=row["user_id"],
        plan=PlanType(row["plan"]),
        status=SubscriptionStatus(row["status"]),
        billing_cycle=BillingCycle(row["billing_cycle"]),
        price_per_cycle=row["price_per_cycle"],
        currency=row["currency"],
        provider=BillingProvider(row["provider"]),
        external_subscription_id=row.get("external_subscription_id"),
        external_customer_id=row.get("external_customer_id"),
        external_price_id=row.get("external_price_id"),
        current_period_start=row["current_period_start"],
        current_period_end=row["current_period_end"],
        cancel_at_period_end=bool(row["cancel_at_period_end"]),
        cancelled_at=row.get("cancelled_at"),
        projects_used_this_period=int(row["projects_used_this_period"]),
        projects_limit=int(row["projects_limit"]),
        last_reset_at=row["last_reset_at"],
        last_event_at=row.get("last_event_at"),
        version=int(row["version"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_payment(row: dict) -> Payment:
    return Payment(
        payment_id=row["payment_id"],
        user_id=row["user_id"],
        amount=row["amount"],
        currency=row["currency"],
        payment_type=PaymentType(row["payment_type"]),
        status=PaymentStatus(row["status"]),
        description=row.get("description") or "",
        job_id=row.get("job_id"),
        subscription_id=row.get("subscription_id"),
        subscription_month=row.get("subscription_month"),
        provider=BillingProvider(row["provider"]),
        external_ref=row.get("external_ref"),
        external_payment_ref=row.get("external_payment_ref"),
        invoice_number=row.get("invoice_number"),
        invoice_url=row.get("invoice_url"),
        paid_at=row.get("paid_at"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_token(row: dict) -> ProviderToken:
    return ProviderToken(
        provider=BillingProvider(row["provider"]),
        account_id=row["account_id"],
        access_token=row["access_token"],
        refresh_token=row.get("refresh_token"),
        expires_at=row["expires_at"],
        linked_user_id=row.get("linked_user_id"),
        updated_at=row["updated_at"],
    )


def _subscription_params(subscription: Subscription) -> dict:
    return {
        "subscription_id": subscription.subscription_id,
        "user_id": subscription.user_id,
        "plan": subscription.plan.value,
        "status": subscription.status.value,
        "billing_cycle": subscription.billing_cycle.value,
        "price_per_cycle": subscription.price_per_cycle,
        "currency": subscription.currency,
        "provider": subscription.provider.value,
        "external_subscription_id": subscription.external_subscription_id,
        "external_customer_id": subscription.external_customer_id,
        "external_price_id": subscription.external_price_id,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "cancelled_at": subscription.cancelled_at,
        "projects_used_this_period": subscription.projects_used_this_period,
        "projects_limit": subscription.projects_limit,
        "last_reset_at": subscription.last_reset_at,
        "last_event_at": subscription.last_event_at,
    }


def _payment_params(payment: Payment) -> dict:
    return {
        "payment_id": payment.payment_id,
        "user_id": payment.user_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "payment_type": payment.payment_type.value,
        "status": payment.status.value,
        "description": payment.description,
        "job_id": payment.job_id,
        "subscription_id": payment.subscription_id,
        "subscription_month": payment.subscription_month,
        "provider": payment.provider.value,
        "external_ref": payment.external_ref,
        "external_payment_ref": payment.external_payment_ref,
        "invoice_number": payment.invoice_number,
        "invoice_url": payment.invoice_url,
        "paid_at": payment.paid_at,
        "metadata": psycopg2.extras.Json(payment.metadata),
    }


_PAYMENT_COLUMNS = """
    payment_id, user_id, amount, currency, payment_type, status, description,
    job_id, subscription_id, subscription_month, provider, external_ref,
    external_payment_ref, invoice_number, invoice_url, paid_at, metadata
"""

_PAYMENT_VALUES = """
    %(payment_id)s, %(user_id)s, %(amount)s, %(currency)s, %(payment_type)s,
    %(status)s, %(description)s, %(job_id)s, %(subscription_id)s,
    %(subscription_month)s, %(provider)s, %(external_ref)s,
    %(external_payment_ref)s, %(invoice_number)s, %(invoice_url)s,
    %(paid_at)s, %(metadata)s
"""


class PostgresBillingRepository(_PostgresStore):
    """Concrete repository persisting the billing ledger in PostgreSQL."""

    def _fetch_subscription(self, where: str, value: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM billing_subscriptions WHERE {where} = %s LIMIT 1",
                (value,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self._fetch_subscription("subscription_id", subscription_id)

    def get_subscription_by_user(self, user_id: str) -> Optional[Subscription]:
        return self._fetch_subscription("user_id", user_id)

    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        return self._fetch_subscription("external_subscription_id", external_subscription_id)

    def insert_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_subscriptions (
                    subscription_id, user_id, plan, status, billing_cycle,
                    price_per_cycle, currency, provider, external_subscription_id,
                    external_customer_id, external_price_id, current_period_start,
                    current_period_end, cancel_at_period_end, cancelled_at,
                    projects_used_this_period, projects_limit, last_reset_at,
                    last_event_at, version
                )
                VALUES (%(subscription_id)s, %(user_id)s, %(plan)s, %(status)s,
                        %(billing_cycle)s, %(price_per_cycle)s, %(currency)s,
                        %(provider)s, %(external_subscription_id)s,
                        %(external_customer_id)s, %(external_price_id)s,
                        %(current_period_start)s, %(current_period_end)s,
                        %(cancel_at_period_end)s, %(cancelled_at)s,
                        %(projects_used_this_period)s, %(projects_limit)s,
                        %(last_reset_at)s, %(last_event_at)s, 0)
                ON CONFLICT (user_id) DO NOTHING
                RETURNING *
                """,
                _subscription_params(subscription),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def update_subscription(self, subscription: Subscription, *, expected_version: int) -> Optional[Subscription]:
        params = _subscription_params(subscription)
        params["expected_version"] = expected_version
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET plan = %(plan)s,
                    status = %(status)s,
                    billing_cycle = %(billing_cycle)s,
                    price_per_cycle = %(price_per_cycle)s,
                    currency = %(currency)s,
                    provider = %(provider)s,
                    external_subscription_id = %(external_subscription_id)s,
                    external_customer_id = %(external_customer_id)s,
                    external_price_id = %(external_price_id)s,
                    current_period_start = %(current_period_start)s,
                    current_period_end = %(current_period_end)s,
                    cancel_at_period_end = %(cancel_at_period_end)s,
                    cancelled_at = %(cancelled_at)s,
                    projects_used_this_period = %(projects_used_this_period)s,
                    projects_limit = %(projects_limit)s,
                    last_reset_at = %(last_reset_at)s,
                    last_event_at = %(last_event_at)s,
                    version = version + 1,
                    updated_at = NOW()
                WHERE subscription_id = %(subscription_id)s
                  AND version = %(expected_version)s
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_payments WHERE payment_id = %s LIMIT 1",
                (payment_id,),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def get_payment_by_external_ref(self, external_ref: str) -> Optional[Payment]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_payments
                WHERE external_ref = %s OR external_payment_ref = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (external_ref, external_ref),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def get_cycle_payment(self, subscription_id: str, subscription_month: str) -> Optional[Payment]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_payments
                WHERE subscription_id = %s AND subscription_month = %s
                LIMIT 1
                """,
                (subscription_id, subscription_month),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def create_payment(self, payment: Payment) -> Payment:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                INSERT INTO billing_payments ({_PAYMENT_COLUMNS})
                VALUES ({_PAYMENT_VALUES})
                RETURNING *
                """,
                _payment_params(payment),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist payment")
            return _row_to_payment(row)

    def insert_payment_if_absent(self, payment: Payment) -> Optional[Payment]:
        if not payment.external_ref or payment.subscription_month:
            raise ValueError("keyed payments require external_ref and no subscription_month")

        with self._cursor() as cursor:
            cursor.execute(
                f"""
                INSERT INTO billing_payments ({_PAYMENT_COLUMNS})
                VALUES ({_PAYMENT_VALUES})
                ON CONFLICT (provider, external_ref)
                    WHERE external_ref IS NOT NULL AND subscription_month IS NULL
                    DO NOTHING
                RETURNING *
                """,
                _payment_params(payment),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def upsert_cycle_payment(self, payment: Payment) -> Payment:
        if not payment.subscription_id or not payment.subscription_month:
            raise ValueError("cycle payments require subscription_id and subscription_month")

        with self._cursor() as cursor:
            cursor.execute(
                f"""
                INSERT INTO billing_payments ({_PAYMENT_COLUMNS})
                VALUES ({_PAYMENT_VALUES})
                ON CONFLICT (subscription_id, subscription_month) DO UPDATE SET
                    status = EXCLUDED.status,
                    amount = EXCLUDED.amount,
                    currency = EXCLUDED.currency,
                    external_ref = COALESCE(EXCLUDED.external_ref, billing_payments.external_ref),
                    external_payment_ref = COALESCE(
                        EXCLUDED.external_payment_ref, billing_payments.external_payment_ref
                    ),
                    invoice_number = COALESCE(EXCLUDED.invoice_number, billing_payments.invoice_number),
                    invoice_url = COALESCE(EXCLUDED.invoice_url, billing_payments.invoice_url),
                    paid_at = COALESCE(EXCLUDED.paid_at, billing_payments.paid_at),
                    updated_at = NOW()
                WHERE billing_payments.status IN ('PENDING', 'FAILED')
                RETURNING *
                """,
                _payment_params(payment),
            )
            row = cursor.fetchone()
            if row:
                return _row_to_payment(row)

            cursor.execute(
                """
                SELECT *
                FROM billing_payments
                WHERE subscription_id = %s AND subscription_month = %s
                LIMIT 1
                """,
                (payment.subscription_id, payment.subscription_month),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist cycle payment")
            return _row_to_payment(row)

    def update_payment_status(
        self,
        payment_id: str,
        *,
        expected_status: PaymentStatus,
        status: PaymentStatus,
        paid_at: Optional[datetime] = None,
        external_payment_ref: Optional[str] = None,
    ) -> Optional[Payment]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_payments
                SET status = %s,
                    paid_at = COALESCE(%s, paid_at),
                    external_payment_ref = COALESCE(%s, external_payment_ref),
                    updated_at = NOW()
                WHERE payment_id = %s AND status = %s
                RETURNING *
                """,
                (status.value, paid_at, external_payment_ref, payment_id, expected_status.value),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def has_processed_event(self, provider: BillingProvider, external_event_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT 1
                FROM billing_external_events
                WHERE provider = %s AND external_event_id = %s
                """,
                (provider.value, external_event_id),
            )
            return cursor.fetchone() is not None

    def mark_event_processed(self, event: ExternalEvent, *, outcome: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_external_events (
                    provider,
                    external_event_id,
                    event_type,
                    raw_type,
                    outcome,
                    received_at,
                    processed_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, NOW())
                ON CONFLICT (provider, external_event_id) DO NOTHING
                """,
                (
                    event.provider.value,
                    event.external_event_id,
                    event.event_type.value,
                    event.raw_type,
                    outcome,
                    event.received_at,
                ),
            )
            return cursor.rowcount > 0

    def record_audit_event(self, event: BillingAuditEvent) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_audit_events (
                    event_type, user_id, subscription_id, payment_id, metadata, occurred_at
                )
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    event.event_type.value,
                    event.user_id,
                    event.subscription_id,
                    event.payment_id,
                    psycopg2.extras.Json(event.metadata),
                    event.occurred_at,
                ),
            )


class PostgresTokenStore(_PostgresStore):
    """Stores provider OAuth tokens so they survive process restarts."""

    def get_token(self, provider: BillingProvider, account_id: str) -> Optional[ProviderToken]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_provider_tokens
                WHERE provider = %s AND account_id = %s
                LIMIT 1
                """,
                (provider.value, account_id),
            )
            row = cursor.fetchone()
            return _row_to_token(row) if row else None

    def save_token(self, token: ProviderToken) -> ProviderToken:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_provider_tokens (
                    provider, account_id, access_token, refresh_token, expires_at, linked_user_id
                )
                VALUES (%(provider)s, %(account_id)s, %(access_token)s, %(refresh_token)s,
                        %(expires_at)s, %(linked_user_id)s)
                ON CONFLICT (provider, account_id) DO UPDATE SET
                    access_token = EXCLUDED.access_token,
                    refresh_token = COALESCE(EXCLUDED.refresh_token, billing_provider_tokens.refresh_token),
                    expires_at = EXCLUDED.expires_at,
                    linked_user_id = COALESCE(EXCLUDED.linked_user_id, billing_provider_tokens.linked_user_id),
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "provider": token.provider.value,
                    "account_id": token.account_id,
                    "access_token": token.access_token,
                    "refresh_token": token.refresh_token,
                    "expires_at": token.expires_at,
                    "linked_user_id": token.linked_user_id,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist provider token")
            return _row_to_token(row)


SCHEMA_PATH = Path(__file__).with_name("schema.sql")


def ensure_billing_schema(conn: Optional[PgConnection] = None) -> None:
    """Create the billing tables if they do not exist yet."""

    statements = SCHEMA_PATH.read_text(encoding="utf-8")
    with managed_connection(conn) as (connection, _managed):
        with connection.cursor() as cursor:
            cursor.execute(statements)


__all__ = [
    "BillingRepository",
    "PostgresBillingRepository",
    "PostgresTokenStore",
    "ProviderTokenStore",
    "SCHEMA_PATH",
    "ensure_billing_schema",
    "managed_connection",
]
