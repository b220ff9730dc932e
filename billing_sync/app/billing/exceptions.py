"""Error taxonomy for billing operations."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Represents a billing failure that can be surfaced to API callers."""

    message: str
    detail: Optional[Mapping[str, Any]] = None

    code = "billing_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class Unauthenticated(BillingError):
    code = "unauthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED


class Unauthorized(BillingError):
    """Resource ownership mismatch."""

    code = "unauthorized"
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(BillingError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidInput(BillingError):
    """Unknown plan, package or billing cycle, or a malformed request."""

    code = "invalid_input"
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidItem(InvalidInput):
    """Requested item references a catalog entry the provider cannot sell."""

    code = "invalid_item"


class InvalidState(BillingError):
    code = "invalid_state"
    status_code = status.HTTP_409_CONFLICT


class ProviderNotConfigured(BillingError):
    code = "provider_not_configured"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


@dataclass
class ProviderUnavailable(BillingError):
    """Network failure, timeout or 5xx from an external provider."""

    retry_after_seconds: int = 30

    code = "provider_unavailable"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __post_init__(self) -> None:
        super().__post_init__()
        self._payload["retry_after_seconds"] = self.retry_after_seconds

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail=dict(self.payload),
            headers={"Retry-After": str(self.retry_after_seconds)},
        )


class SignatureInvalid(BillingError):
    code = "signature_invalid"
    status_code = status.HTTP_401_UNAUTHORIZED


class LedgerUnavailable(BillingError):
    """Transient failure reaching the ledger store."""

    code = "ledger_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ReconciliationError(BillingError):
    """An event cannot be applied to the ledger; replaying it will not help."""

    code = "reconciliation_error"
    status_code = 422


class EventOutOfOrder(BillingError):
    """An event references ledger state that has not arrived yet.

    The event is left unmarked so a redelivery can apply it.
    """

    code = "event_out_of_order"
    status_code = status.HTTP_409_CONFLICT


__all__ = [
    "BillingError",
    "EventOutOfOrder",
    "InvalidInput",
    "InvalidItem",
    "InvalidState",
    "LedgerUnavailable",
    "NotFound",
    "ProviderNotConfigured",
    "ProviderUnavailable",
    "ReconciliationError",
    "SignatureInvalid",
    "Unauthenticated",
    "Unauthorized",
]
