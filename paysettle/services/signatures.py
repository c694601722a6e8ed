"""Webhook signature verification and provider secret resolution."""
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Mapping

import stripe

from paysettle.config import ProviderConfig, Settings, get_settings
from paysettle.utils.errors import WebhookAuthenticationError, WebhookConfigurationError

logger = logging.getLogger(__name__)

_HEX_PREFIX = "sha256="


@dataclass(frozen=True)
class ProviderSecrets:
    provider: str
    primary: str | None
    secondary: str | None
    scheme: str
    signature_header: str
    tolerance_seconds: int

    @property
    def active(self) -> list[str]:
        return [s for s in (self.primary, self.secondary) if s]


def _masked_secret_status(secrets_info: Mapping[str, str | None]) -> dict[str, str | None]:
    """Return deterministic markers instead of raw secrets for logging."""

    masked: dict[str, str | None] = {}
    for name, secret in secrets_info.items():
        if not secret:
            masked[name] = None
            continue

        digest = hashlib.sha256(secret.encode()).hexdigest()[:8]
        masked[name] = f"sha256:{digest}"
    return masked


def secret_fingerprints(secrets: ProviderSecrets) -> dict[str, str | None]:
    return _masked_secret_status({"primary": secrets.primary, "next": secrets.secondary})


def resolve_provider_secrets(provider: str, settings: Settings | None = None) -> ProviderSecrets:
    """Return verification material for ``provider`` or raise.

    Unknown providers are indistinguishable from forged deliveries; a known provider
    without any secret is a deployment problem and reported as such.
    """

    settings = settings or get_settings()
    config: ProviderConfig | None = settings.webhook_providers.get(provider.lower())
    if config is None:
        logger.warning("Webhook received for unknown provider", extra={"provider": provider})
        raise WebhookAuthenticationError()

    secrets = ProviderSecrets(
        provider=provider.lower(),
        primary=config.secret,
        secondary=config.secret_next,
        scheme=config.scheme,
        signature_header=config.signature_header,
        tolerance_seconds=config.tolerance_seconds,
    )
    if not secrets.active:
        logger.error(
            "Webhook secrets are not configured",
            extra={"provider": provider, "secret_status": secret_fingerprints(secrets)},
        )
        raise WebhookConfigurationError(
            "Webhook provider secret is not configured.", {"provider": provider}
        )
    return secrets


def compute_signature(secret: str, raw_body: bytes) -> str:
    """Compute the hex HMAC-SHA256 signature of the raw webhook body."""

    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def _verify_hmac(raw_body: bytes, signature: str, secret: str) -> bool:
    provided = signature.strip()
    if not provided.isascii():
        return False
    if provided.lower().startswith(_HEX_PREFIX):
        provided = provided[len(_HEX_PREFIX):]
    expected = compute_signature(secret, raw_body)
    return hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("ascii"))


def _verify_stripe(raw_body: bytes, signature: str, secret: str, tolerance: int) -> bool:
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        return False
    try:
        return bool(stripe.WebhookSignature.verify_header(payload, signature, secret, tolerance))
    except stripe.SignatureVerificationError:
        return False


def verify_signature(
    raw_body: bytes,
    signature: str | None,
    secrets: list[str],
    *,
    scheme: str = "hmac-sha256",
    tolerance_seconds: int = 300,
) -> bool:
    """Return whether ``signature`` authenticates ``raw_body`` under any of ``secrets``.

    Works on the exact bytes received; the body must not be parsed beforehand.
    """

    if not signature or not secrets:
        return False

    for secret in secrets:
        if scheme == "stripe":
            matched = _verify_stripe(raw_body, signature, secret, tolerance_seconds)
        else:
            matched = _verify_hmac(raw_body, signature, secret)
        if matched:
            return True
    return False


def verify_provider_signature(
    provider: str,
    raw_body: bytes,
    signature: str | None,
    settings: Settings | None = None,
) -> None:
    """Resolve the provider's secrets and raise when the delivery is not authentic."""

    secrets = resolve_provider_secrets(provider, settings)
    if verify_signature(
        raw_body,
        signature,
        secrets.active,
        scheme=secrets.scheme,
        tolerance_seconds=secrets.tolerance_seconds,
    ):
        return

    logger.warning(
        "Webhook signature mismatch",
        extra={"provider": provider, "secret_status": secret_fingerprints(secrets)},
    )
    raise WebhookAuthenticationError()


__all__ = [
    "ProviderSecrets",
    "compute_signature",
    "resolve_provider_secrets",
    "secret_fingerprints",
    "verify_provider_signature",
    "verify_signature",
]
