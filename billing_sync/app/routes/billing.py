"""API routes exposing billing functionality."""
from __future__ import annotations

import logging
import os
from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Cookie, Depends, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse

from ... import app_context
from ..billing import BillingError, BillingUser, InvalidInput, PaymentType, Unauthenticated
from ..billing.service import parse_payment_type
from ..schemas.billing import (
    CheckoutRequest,
    CheckoutResponse,
    CheckoutStatusResponse,
    InvoiceRequest,
    InvoiceResponse,
    InvoicingAuthStatusResponse,
    PaymentStatusResponse,
    PortalSessionRequest,
    PortalSessionResponse,
    SubscriptionEnvelope,
    SubscriptionResponse,
    SyncResponse,
)
from ..services.billing import get_billing_config, get_billing_service, get_webhook_ingress

logger = logging.getLogger("billing")

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
) -> BillingUser:
    try:
        resolved = app_context.get_current_user(session_token=session_token)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    if resolved is None:
        raise Unauthenticated("Not authenticated").to_http_exception()
    return _as_billing_user(resolved)


def _as_billing_user(user: Any) -> BillingUser:
    if isinstance(user, BillingUser):
        return user
    return BillingUser(
        id=str(user.id),
        email=getattr(user, "email", "") or "",
        name=getattr(user, "name", None) or getattr(user, "username", None),
    )


router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    payload: CheckoutRequest,
    *,
    current_user: BillingUser = Depends(_get_current_user),
) -> CheckoutResponse:
    service = get_billing_service()
    try:
        kind = parse_payment_type(payload.payment_type)
        if kind == PaymentType.ONE_TIME:
            if not payload.package_type:
                raise InvalidInput("packageType is required for one-time checkout")
            session = service.start_one_time_checkout(
                current_user, payload.package_type, job_id=payload.job_id
            )
        else:
            if not payload.plan or not payload.billing_cycle:
                raise InvalidInput("planType and billingCycle are required for subscriptions")
            session = service.start_subscription_checkout(
                current_user, payload.plan, payload.billing_cycle
            )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CheckoutResponse.from_session(session)


@router.get("/checkout/status", response_model=CheckoutStatusResponse)
def get_checkout_status(
    session_id: str = Query(alias="sessionId"),
    *,
    current_user: BillingUser = Depends(_get_current_user),
) -> CheckoutStatusResponse:
    service = get_billing_service()
    try:
        checkout_status = service.get_checkout_status(current_user, session_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CheckoutStatusResponse.from_status(checkout_status)


@router.post("/portal", response_model=PortalSessionResponse)
def create_portal_session(
    payload: PortalSessionRequest,
    *,
    current_user: BillingUser = Depends(_get_current_user),
) -> PortalSessionResponse:
    service = get_billing_service()
    try:
        url = service.create_portal_session(current_user, return_url=payload.return_url)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return PortalSessionResponse(url=url)


@router.get("/subscription", response_model=SubscriptionEnvelope)
def get_subscription(
    *,
    current_user: BillingUser = Depends(_get_current_user),
) -> SubscriptionEnvelope:
    service = get_billing_service()
    try:
        subscription = service.get_subscription(current_user)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    if subscription is None:
        return SubscriptionEnvelope(subscription=None)
    return SubscriptionEnvelope(subscription=SubscriptionResponse.from_subscription(subscription))


@router.post("/subscription/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    *,
    current_user: BillingUser = Depends(_get_current_user),
) -> SubscriptionResponse:
    service = get_billing_service()
    try:
        subscription = service.cancel(current_user)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/subscription/resume", response_model=SubscriptionResponse)
def resume_subscription(
    *,
    current_user: BillingUser = Depends(_get_current_user),
) -> SubscriptionResponse:
    service = get_billing_service()
    try:
        subscription = service.resume(current_user)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/invoices", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
def create_invoice(
    payload: InvoiceRequest,
    *,
    current_user: BillingUser = Depends(_get_current_user),
) -> InvoiceResponse:
    service = get_billing_service()
    try:
        result = service.create_invoice(
            current_user,
            payment_type=payload.payment_type,
            package_type=payload.package_type,
            plan=payload.plan,
            billing_cycle=payload.billing_cycle,
            job_id=payload.job_id,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return InvoiceResponse.from_result(result)


@router.get("/payments/{payment_id}/status", response_model=PaymentStatusResponse)
def get_payment_status(
    payment_id: str,
    *,
    current_user: BillingUser = Depends(_get_current_user),
) -> PaymentStatusResponse:
    service = get_billing_service()
    try:
        payment = service.get_payment(payment_id, current_user)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return PaymentStatusResponse.from_payment(payment)


@router.post("/payments/{payment_id}/sync", response_model=SyncResponse)
def sync_payment_status(
    payment_id: str,
    *,
    current_user: BillingUser = Depends(_get_current_user),
) -> SyncResponse:
    service = get_billing_service()
    try:
        result = service.sync_status(payment_id, current_user)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SyncResponse.from_result(result)


@router.get("/invoicing/auth/status", response_model=InvoicingAuthStatusResponse)
def get_invoicing_auth_status(
    *,
    current_user: BillingUser = Depends(_get_current_user),
) -> InvoicingAuthStatusResponse:
    service = get_billing_service()
    try:
        auth_status = service.invoicing_auth_status(current_user)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return InvoicingAuthStatusResponse.from_status(auth_status)


@router.get("/invoicing/auth/callback")
def complete_invoicing_auth(
    code: str = Query(default=""),
    state: str = Query(default=""),
    error: Optional[str] = Query(default=None),
) -> RedirectResponse:
    target = f"{get_billing_config().app_base_url}/billing"
    if error:
        logger.warning("Invoicing authorization declined: %s", error)
        return RedirectResponse(
            f"{target}?{urlencode({'invoicing': 'error', 'reason': error})}",
            status_code=status.HTTP_302_FOUND,
        )

    service = get_billing_service()
    try:
        service.complete_invoicing_authorization(code, state)
    except BillingError as exc:
        logger.warning("Invoicing authorization failed: %s", exc.message)
        return RedirectResponse(
            f"{target}?{urlencode({'invoicing': 'error', 'reason': exc.code})}", status_code=status.HTTP_302_FOUND
        )
    return RedirectResponse(f"{target}?invoicing=connected", status_code=status.HTTP_302_FOUND)


@router.post("/webhooks/{provider}")
async def receive_webhook(provider: str, request: Request) -> Response:
    # Signatures are computed over the exact bytes, so the body is never parsed here.
    raw_body = await request.body()
    ingress = get_webhook_ingress()
    header = ingress.signature_header(provider)
    signature = request.headers.get(header) if header else None
    ack = await run_in_threadpool(ingress.receive, provider, raw_body, signature)
    return JSONResponse(content=ack.body, status_code=ack.status_code)
