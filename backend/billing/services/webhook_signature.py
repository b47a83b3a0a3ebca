"""Webhook signature verification against per-provider shared secrets."""
from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

import stripe
from django.conf import settings

from billing.constants import PROVIDER_STRIPE
from billing.observability.metrics import WEBHOOK_SIGNATURE_FAILURE_COUNT

logger = logging.getLogger(__name__)


def _verify_stripe(payload: str, signature: str, secret: str) -> None:
    tolerance = int(getattr(settings, "STRIPE_WEBHOOK_TOLERANCE", stripe.Webhook.DEFAULT_TOLERANCE))
    stripe.WebhookSignature.verify_header(payload, signature, secret, tolerance)


class SignatureValidator:
    """Checks that a webhook body was produced by the configured provider.

    ``verify`` never raises: any failure, including missing configuration,
    yields False and is logged with the provider and signature length only.
    """

    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self._secrets = secrets
        self._verifiers: Dict[str, Callable[[str, str, str], None]] = {
            PROVIDER_STRIPE: _verify_stripe,
        }

    def _secret_for(self, provider: str) -> str:
        if self._secrets is not None:
            return self._secrets.get(provider, "")
        if provider == PROVIDER_STRIPE:
            return getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
        return ""

    def verify(self, payload: str, signature: Optional[str], provider: str) -> bool:
        verifier = self._verifiers.get(provider)
        secret = self._secret_for(provider)
        signature = signature or ""

        if verifier is None:
            reason = "unsupported provider"
        elif not secret:
            reason = "webhook secret not configured"
        elif not signature:
            reason = "missing signature"
        else:
            try:
                verifier(payload, signature, secret)
                return True
            except stripe.SignatureVerificationError:
                reason = "signature mismatch"
            except ValueError:
                reason = "unparseable signature header"

        WEBHOOK_SIGNATURE_FAILURE_COUNT.labels(provider=provider).inc()
        logger.warning(
            "Webhook signature verification failed (provider=%s, signature_length=%s, reason=%s).",
            provider,
            len(signature),
            reason,
        )
        return False
