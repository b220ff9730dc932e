"""Shared application context for reusable dependencies."""
from __future__ import annotations

from typing import Any, Callable, Optional

_get_conn: Optional[Callable[[], Any]] = None
_get_current_user: Optional[Callable[..., Any]] = None
_billing_notifier: Optional[Any] = None


def configure(
    *,
    get_conn: Callable[[], Any],
    get_current_user: Callable[..., Any],
    billing_notifier: Optional[Any] = None,
) -> None:
    """Register the host application's hooks used by the billing routers.

    ``billing_notifier`` replaces the log-only notifier when the host can
    deliver subscription and payment notices to users.
    """

    global _get_conn
    global _get_current_user
    global _billing_notifier

    _get_conn = get_conn
    _get_current_user = get_current_user
    _billing_notifier = billing_notifier


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"Billing context has not been configured yet: {name}")
    return value


def get_conn() -> Any:
    conn_factory = _require(_get_conn, "get_conn")
    return conn_factory()


def get_current_user(*args: Any, **kwargs: Any) -> Any:
    dependency = _require(_get_current_user, "get_current_user")
    return dependency(*args, **kwargs)


def get_billing_notifier() -> Optional[Any]:
    return _billing_notifier
