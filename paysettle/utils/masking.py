"""Redaction of personal and card data in webhook payloads before they are logged."""
from __future__ import annotations

from typing import Any, Callable, Mapping

MASKED_PLACEHOLDER = "***masked***"

# Customer identity and credentials: nothing of the value is kept.
REDACTED_KEYS = frozenset(
    {
        "name",
        "full_name",
        "first_name",
        "last_name",
        "customer_name",
        "address",
        "billing_address",
        "shipping_address",
        "password",
        "password_hash",
        "token",
        "secret",
        "cvc",
        "cvv",
    }
)

# Card and bank references: the last four characters identify the instrument.
INSTRUMENT_KEYS = frozenset({"card_number", "pan", "iban", "account_number", "bank_account"})

PHONE_KEYS = frozenset({"phone", "mobile"})


def _redact(value: Any) -> str:
    return MASKED_PLACEHOLDER


def _email(value: Any) -> str:
    _, at, domain = str(value).partition("@")
    if not at:
        return "***@***"
    return f"***@{domain or '***'}"


def _phone(value: Any) -> str:
    digits = [ch for ch in str(value) if ch.isdigit()]
    return "***" + "".join(digits[-2:]) if digits else "***"


def _instrument(value: Any) -> str:
    chars = [ch for ch in str(value) if ch.isalnum()]
    if len(chars) <= 4:
        return "***" + "".join(chars)
    return "*" * (len(chars) - 4) + "".join(chars[-4:])


def _masker_for(key: str) -> Callable[[Any], Any] | None:
    lowered = key.lower()
    if lowered in REDACTED_KEYS:
        return _redact
    if lowered == "email" or lowered.endswith("_email"):
        return _email
    if lowered in PHONE_KEYS or "phone" in lowered:
        return _phone
    if lowered in INSTRUMENT_KEYS or "card_number" in lowered:
        return _instrument
    return None


def _mask_value(key: str, value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _mask_value(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_mask_value(key, item) for item in value]
    if value is None or isinstance(value, bool):
        return value
    masker = _masker_for(key)
    return masker(value) if masker else value


def mask_payload(payload: Any) -> Any:
    """Return a masked copy of ``payload``; anything but a mapping is returned as is."""

    if not isinstance(payload, Mapping):
        return payload
    return {key: _mask_value(str(key), value) for key, value in payload.items()}


__all__ = ["MASKED_PLACEHOLDER", "mask_payload"]
