"""Invoicing adapter for MYOB AccountRight."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

import requests

from ...config import BillingConfig
from .catalog import get_package_definition, get_plan_definition, parse_billing_cycle
from .exceptions import (
    InvalidInput,
    InvalidItem,
    InvalidState,
    ProviderNotConfigured,
    ProviderUnavailable,
    SignatureInvalid,
)
from .models import (
    BillingCycle,
    BillingProvider,
    BillingUser,
    CancellationMode,
    CheckoutSession,
    CheckoutStatus,
    ExternalEvent,
    ExternalEventType,
    InvoiceResult,
    InvoiceSnapshot,
    ItemSpec,
    PaymentStatus,
    PaymentType,
    ProviderPaymentStatus,
    ProviderToken,
)
from .repository import ProviderTokenStore

logger = logging.getLogger("billing")

AUTHORIZE_URL = "https://secure.myob.com/oauth2/account/authorize"
TOKEN_URL = "https://secure.myob.com/oauth2/v1/authorize"
PAYDIRECT_URL = "https://paydirect.myob.com/pay/{uid}"
API_VERSION = "v2"
OAUTH_SCOPE = "CompanyFile"
TOKEN_REFRESH_SKEW_SECONDS = 60
INVOICE_DUE_DAYS = 14
SIGNATURE_HEADER = "x-myob-signature"
PORTAL_USER_MEMO_PREFIX = "Portal user "

_PAID_EVENT_TYPES = {"invoice.paid", "invoice.closed"}


def invoice_status_from_amounts(total: Decimal, balance_due: Decimal) -> str:
    """Classify an AccountRight invoice as ``OPEN``, ``CLOSED`` or ``CREDIT``."""

    if balance_due <= 0 and total > 0:
        return "CLOSED"
    if total < 0:
        return "CREDIT"
    return "OPEN"


def _decimal(value: object) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    return Decimal(str(value))


def _odata_literal(value: str) -> str:
    return value.replace("'", "''")


def _memo_user_id(memo: object) -> Optional[str]:
    if not isinstance(memo, str) or not memo.startswith(PORTAL_USER_MEMO_PREFIX):
        return None
    return memo[len(PORTAL_USER_MEMO_PREFIX):].strip() or None


def _parse_created(value: object) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable invoicing event time %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MyobAdapter:
    """Creates service invoices and polls their payment state."""

    provider = BillingProvider.INVOICING

    def __init__(
        self,
        config: BillingConfig,
        token_store: ProviderTokenStore,
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config
        self._tokens = token_store
        self._session = session or requests.Session()

    def is_configured(self) -> bool:
        return self._config.is_myob_configured

    @property
    def _account_id(self) -> str:
        if not self._config.myob_business_id:
            raise ProviderNotConfigured("Invoicing business id is not configured")
        return self._config.myob_business_id

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        if not self._config.myob_client_id or not self._config.myob_redirect_uri:
            raise ProviderNotConfigured("Invoicing client id or redirect URI is not configured")
        params = {
            "client_id": self._config.myob_client_id,
            "redirect_uri": self._config.myob_redirect_uri,
            "response_type": "code",
            "scope": OAUTH_SCOPE,
            "state": state,
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def has_credentials(self) -> bool:
        if not self.is_configured():
            return False
        token = self._tokens.get_token(self.provider, self._account_id)
        if token is None:
            return False
        return bool(token.refresh_token) or not token.expires_within(TOKEN_REFRESH_SKEW_SECONDS)

    def exchange_code(self, code: str, *, linked_user_id: Optional[str] = None) -> ProviderToken:
        """Exchange an authorization code and persist the resulting tokens."""

        if not (self._config.myob_client_id and self._config.myob_client_secret and self._config.myob_redirect_uri):
            raise ProviderNotConfigured("Invoicing OAuth credentials are not configured")
        payload = self._token_grant(
            {
                "client_id": self._config.myob_client_id,
                "client_secret": self._config.myob_client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._config.myob_redirect_uri,
                "scope": OAUTH_SCOPE,
            }
        )
        token = self._store_token(payload, linked_user_id=linked_user_id)
        logger.info(
            "Linked invoicing account %s",
            token.account_id,
            extra={"linked_user_id": linked_user_id},
        )
        return token

    def _refresh(self, token: ProviderToken) -> ProviderToken:
        if not token.refresh_token:
            raise ProviderNotConfigured("Invoicing access expired; re-authentication required")
        payload = self._token_grant(
            {
                "client_id": self._config.myob_client_id or "",
                "client_secret": self._config.myob_client_secret or "",
                "grant_type": "refresh_token",
                "refresh_token": token.refresh_token,
            }
        )
        logger.info("Refreshed invoicing access token for account %s", token.account_id)
        return self._store_token(payload, linked_user_id=token.linked_user_id, previous=token)

    def _token_grant(self, form: Dict[str, str]) -> Dict[str, Any]:
        try:
            response = self._session.post(
                TOKEN_URL,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._config.provider_timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ProviderUnavailable("Invoicing token endpoint unreachable") from exc

        if response.status_code >= 500:
            raise ProviderUnavailable(f"Invoicing token endpoint error ({response.status_code})")
        if response.status_code >= 400:
            logger.warning("Invoicing token grant rejected: status=%s", response.status_code)
            raise ProviderNotConfigured("Invoicing authorization was rejected; re-authentication required")
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderUnavailable("Invoicing token endpoint returned malformed JSON") from exc

    def _store_token(
        self,
        payload: Mapping[str, Any],
        *,
        linked_user_id: Optional[str],
        previous: Optional[ProviderToken] = None,
    ) -> ProviderToken:
        expires_in = int(payload.get("expires_in") or 0)
        token = ProviderToken(
            provider=self.provider,
            account_id=self._account_id,
            access_token=str(payload["access_token"]),
            refresh_token=payload.get("refresh_token") or (previous.refresh_token if previous else None),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            linked_user_id=linked_user_id,
        )
        return self._tokens.save_token(token)

    def _access_token(self) -> str:
        token = self._tokens.get_token(self.provider, self._account_id)
        if token is None:
            raise ProviderNotConfigured("Invoicing account is not linked; authorization required")
        if token.expires_within(TOKEN_REFRESH_SKEW_SECONDS):
            token = self._refresh(token)
        return token.access_token

    # ------------------------------------------------------------------
    # API helpers
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.is_configured():
            raise ProviderNotConfigured("Invoicing is not configured")
        access_token = self._access_token()
        url = f"{self._config.myob_api_base_url}/{self._account_id}{endpoint}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "x-myobapi-key": self._config.myob_client_id or "",
            "x-myobapi-version": API_VERSION,
            "Accept": "application/json",
        }
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=body,
                headers=headers,
                timeout=self._config.provider_timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.warning("Invoicing request %s %s failed: %s", method, endpoint, exc)
            raise ProviderUnavailable("Invoicing provider unreachable") from exc

        status_code = response.status_code
        if status_code == 401:
            raise ProviderNotConfigured("Invoicing access was revoked; re-authentication required")
        if status_code == 429 or status_code >= 500:
            raise ProviderUnavailable(f"Invoicing provider error ({status_code})")
        if status_code >= 400:
            raise InvalidInput(f"Invoicing request rejected ({status_code}): {response.text[:200]}")

        result: Dict[str, Any] = {}
        if response.text:
            try:
                result = response.json()
            except ValueError as exc:
                raise ProviderUnavailable("Invoicing provider returned malformed JSON") from exc
        location = response.headers.get("Location") if response.headers else None
        if location and "UID" not in result:
            result["UID"] = location.rstrip("/").rsplit("/", 1)[-1]
        return result

    def _find_or_create_customer(self, user: BillingUser) -> str:
        found = self._request(
            "GET",
            "/Contact/Customer",
            params={"$filter": f"Addresses/any(a: a/Email eq '{_odata_literal(user.email)}')"},
        )
        items = found.get("Items") or []
        if items:
            return items[0]["UID"]

        name_parts = (user.name or "").strip().split(" ", 1)
        created = self._request(
            "POST",
            "/Contact/Customer",
            body={
                "FirstName": name_parts[0] or "Customer",
                "LastName": name_parts[1] if len(name_parts) > 1 else "",
                "IsIndividual": True,
                "DisplayID": f"C{user.id[-8:]}",
                "Addresses": [{"Location": 1, "Email": user.email}],
            },
        )
        logger.info("Created invoicing customer for user %s", user.id)
        return created["UID"]

    def _lookup_uid(self, endpoint: str, odata_filter: str, what: str) -> str:
        found = self._request("GET", endpoint, params={"$filter": odata_filter, "$top": "1"})
        items = found.get("Items") or []
        if not items:
            raise ProviderNotConfigured(f"Invoicing company file has no {what}")
        return items[0]["UID"]

    # ------------------------------------------------------------------
    # Adapter contract
    # ------------------------------------------------------------------

    def create_invoice(self, user: BillingUser, item: ItemSpec) -> InvoiceResult:
        if item.payment_type == PaymentType.ONE_TIME:
            if item.package_type is None:
                raise InvalidItem("package_type is required for a package invoice")
            package = get_package_definition(item.package_type)
            amount = package.price
            comment = f"{package.display_name} package"
            if item.job_id:
                comment = f"{comment} (Job: {item.job_id})"
            description = f"{package.display_name} - {package.description}"
        else:
            if item.plan is None:
                raise InvalidItem("plan is required for a subscription invoice")
            plan = get_plan_definition(item.plan)
            cycle = parse_billing_cycle(item.billing_cycle or BillingCycle.MONTHLY)
            amount = plan.price_for(cycle)
            period_text = "Annual" if cycle == BillingCycle.YEARLY else "Monthly"
            comment = f"{plan.display_name} - {period_text} Subscription"
            description = f"{plan.display_name} Plan - {period_text} Subscription"

        customer_uid = self._find_or_create_customer(user)
        tax_code_uid = self._lookup_uid("/GeneralLedger/TaxCode", "Code eq 'GST'", "GST tax code")
        account_uid = self._lookup_uid(
            "/GeneralLedger/Account", "Type eq 'Income' and IsActive eq true", "income account"
        )

        created = self._request(
            "POST",
            "/Sale/Invoice/Service",
            body={
                "Date": f"{date.today().isoformat()} 00:00:00",
                "Customer": {"UID": customer_uid},
                "IsTaxInclusive": True,
                "OnlinePaymentMethod": "All",
                "Comment": comment,
                "JournalMemo": f"{PORTAL_USER_MEMO_PREFIX}{user.id}",
                "Terms": {"PaymentIsDue": "DayOfMonthAfterEOM", "BalanceDueDate": INVOICE_DUE_DAYS},
                "Lines": [
                    {
                        "Type": "Transaction",
                        "Description": description,
                        "Account": {"UID": account_uid},
                        "TaxCode": {"UID": tax_code_uid},
                        "Total": float(amount),
                    }
                ],
            },
        )
        invoice_uid = created.get("UID")
        if not invoice_uid:
            raise ProviderUnavailable("Invoicing provider did not return an invoice id")

        invoice = self._request("GET", f"/Sale/Invoice/Service/{invoice_uid}")
        logger.info(
            "Created invoice %s for user %s",
            invoice_uid,
            user.id,
            extra={"invoice_number": invoice.get("Number")},
        )
        return InvoiceResult(
            invoice_id=invoice_uid,
            invoice_number=str(invoice.get("Number") or ""),
            payment_url=PAYDIRECT_URL.format(uid=invoice_uid),
            total_amount=amount,
            currency=self._config.currency,
        )

    def create_checkout(self, user: BillingUser, item: ItemSpec) -> CheckoutSession:
        invoice = self.create_invoice(user, item)
        return CheckoutSession(checkout_url=invoice.payment_url, external_session_id=invoice.invoice_id)

    def cancel_subscription(self, external_ref: str, mode: CancellationMode) -> None:
        raise InvalidState("Invoiced subscriptions are not managed by the invoicing provider")

    def resume_subscription(self, external_ref: str) -> None:
        raise InvalidState("Invoiced subscriptions are not managed by the invoicing provider")

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        raise InvalidState("The invoicing provider has no customer portal")

    def get_checkout_status(self, session_id: str) -> CheckoutStatus:
        raise InvalidState("Checkout sessions are only available for card payments")

    def fetch_payment_status(self, external_ref: str) -> ProviderPaymentStatus:
        invoice = self._request("GET", f"/Sale/Invoice/Service/{external_ref}")
        total = _decimal(invoice.get("TotalAmount"))
        balance = _decimal(invoice.get("BalanceDueAmount"))
        raw_status = invoice_status_from_amounts(total, balance)
        return ProviderPaymentStatus(
            external_ref=external_ref,
            status=PaymentStatus.PAID if raw_status == "CLOSED" else PaymentStatus.PENDING,
            raw_status=raw_status,
            amount_paid=max(total - balance, Decimal("0")),
            balance_due=balance,
        )

    def verify_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> ExternalEvent:
        secret = self._config.myob_webhook_secret
        if not secret:
            raise ProviderNotConfigured("Invoicing webhook secret is not configured")
        if not signature_header:
            raise SignatureInvalid("missing signature header")

        expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature_header.strip().lower()):
            raise SignatureInvalid("signature mismatch")

        try:
            body = json.loads(raw_body)
        except ValueError as exc:
            raise SignatureInvalid("payload is not valid JSON") from exc
        if not isinstance(body, dict):
            raise InvalidInput("invoicing event is not a JSON object")
        return self.normalize_event(body)

    def normalize_event(self, body: Mapping[str, Any]) -> ExternalEvent:
        event_id = str(body.get("id") or "").strip()
        if not event_id:
            raise InvalidInput("invoicing event has no id")
        raw_type = str(body.get("type", ""))
        data = body.get("data") or {}
        payload: Dict[str, object] = {}
        event_type = ExternalEventType.UNHANDLED
        if raw_type in _PAID_EVENT_TYPES and data.get("UID"):
            event_type = ExternalEventType.INVOICE_PAID
            total = _decimal(data.get("TotalAmount"))
            balance = _decimal(data.get("BalanceDueAmount"))
            payload = InvoiceSnapshot(
                external_invoice_id=str(data["UID"]),
                user_id=_memo_user_id(data.get("JournalMemo")),
                amount_paid=max(total - balance, Decimal("0")),
                amount_due=balance,
                currency=self._config.currency,
                invoice_number=data.get("Number"),
                invoice_url=PAYDIRECT_URL.format(uid=data["UID"]),
            ).model_dump()

        received_at = datetime.now(timezone.utc)
        return ExternalEvent(
            provider=self.provider,
            event_type=event_type,
            external_event_id=event_id,
            payload=payload,
            raw_type=raw_type,
            occurred_at=_parse_created(body.get("created")) or received_at,
            received_at=received_at,
        )


__all__ = ["MyobAdapter", "invoice_status_from_amounts"]
