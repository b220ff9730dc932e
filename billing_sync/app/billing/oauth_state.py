"""Signed OAuth ``state`` values linking an invoicing account to a portal user."""
from __future__ import annotations

import hashlib
import hmac

from .exceptions import InvalidInput

_PREFIX = "user_"


def _signature(secret: str, value: str) -> str:
    return hmac.new(secret.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()


def build_state(user_id: str, secret: str) -> str:
    """Return ``user_<id>.<hmac>`` for the authorization redirect."""

    value = f"{_PREFIX}{user_id}"
    return f"{value}.{_signature(secret, value)}"


def parse_state(state: str, secret: str) -> str:
    """Verify a state produced by :func:`build_state` and return the user id."""

    if not state or "." not in state:
        raise InvalidInput("Missing or malformed OAuth state")
    value, _, signature = state.rpartition(".")
    if not hmac.compare_digest(_signature(secret, value), signature):
        raise InvalidInput("OAuth state signature mismatch")
    if not value.startswith(_PREFIX) or len(value) == len(_PREFIX):
        raise InvalidInput("OAuth state does not identify a user")
    return value[len(_PREFIX):]


__all__ = ["build_state", "parse_state"]
