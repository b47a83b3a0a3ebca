"""End-to-end webhook processing: signature, parsing, deduplication and dispatch."""
from __future__ import annotations

import logging
import time
from typing import Any, Mapping, Optional

from billing.observability.logging import log_billing_event
from billing.observability.metrics import WEBHOOK_DUPLICATE_COUNT, WEBHOOK_EVENT_COUNT, WEBHOOK_LATENCY
from billing.services.idempotency import IdempotencyGuard, get_idempotency_guard
from billing.services.webhook_events import UnsupportedEventType, WebhookEvent, parse_webhook_event
from billing.services.webhook_signature import SignatureValidator
from billing.tasks_webhooks import WebhookProcessingResult, dispatch_event

logger = logging.getLogger(__name__)


class WebhookPipeline:
    """Runs one delivery through validator, parser, guard and dispatcher.

    Every path returns a ``WebhookProcessingResult``; nothing escapes
    ``process``. An event id is marked completed only after the dispatcher
    succeeds, and released otherwise so the provider's retry is processed.
    """

    def __init__(self, validator: Optional[SignatureValidator] = None, guard: Optional[IdempotencyGuard] = None):
        self.validator = validator or SignatureValidator()
        self.guard = guard or get_idempotency_guard()

    def process(self, provider: str, payload: Any, signature: Optional[str], headers: Optional[Mapping[str, str]] = None) -> WebhookProcessingResult:
        started = time.monotonic()
        try:
            result = self._process(provider, payload, signature, headers)
        except Exception as exc:
            logger.exception("Unexpected failure processing %s webhook", provider)
            result = WebhookProcessingResult(
                False,
                event_id="",
                event_type="",
                message="Unexpected error",
                error=str(exc) or type(exc).__name__,
                should_retry=True,
            )
        finally:
            WEBHOOK_LATENCY.labels(provider=provider).observe(time.monotonic() - started)

        WEBHOOK_EVENT_COUNT.labels(
            provider=provider,
            event_type=result.event_type or "unknown",
            outcome=_outcome(result),
        ).inc()
        return result

    def process_event(self, event: WebhookEvent) -> WebhookProcessingResult:
        """Deduplicate and dispatch an already verified, normalized event."""

        if self.guard.is_duplicate(event.id) or not self.guard.mark_processing(event.id):
            WEBHOOK_DUPLICATE_COUNT.labels(provider=event.provider).inc()
            logger.info("Duplicate %s event %s suppressed.", event.provider_type, event.id)
            return WebhookProcessingResult(True, event.id, event.type.value, message="Duplicate event ignored")

        completed = False
        try:
            result = dispatch_event(event)
            completed = result.success
        finally:
            if completed:
                self.guard.mark_completed(event.id)
            else:
                self.guard.release(event.id)

        log_billing_event(
            message="webhook_processed",
            event_id=event.id,
            source=event.provider,
            extra={
                "event_type": event.provider_type,
                "success": result.success,
                "should_retry": result.should_retry,
            },
            level=logging.INFO if result.success else logging.WARNING,
        )
        return result

    def _process(
        self,
        provider: str,
        payload: Any,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookProcessingResult:
        body = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else str(payload or "")
        if not self.validator.verify(body, signature, provider):
            return WebhookProcessingResult(False, event_id="", event_type="", message="Invalid signature", error="invalid_signature")

        try:
            event = parse_webhook_event(provider, payload, headers)
        except UnsupportedEventType as exc:
            logger.info("Ignoring unsupported %s event type '%s' (%s).", provider, exc.provider_type, exc.event_id)
            return WebhookProcessingResult(True, exc.event_id, exc.provider_type, message="Ignored unsupported event type")
        if event is None:
            return WebhookProcessingResult(False, event_id="", event_type="", message="Malformed payload", error="malformed_payload")

        return self.process_event(event)


def _outcome(result: WebhookProcessingResult) -> str:
    if result.success:
        return "processed"
    return "retry" if result.should_retry else "rejected"


def process_webhook(
    provider: str,
    payload: Any,
    signature: Optional[str],
    headers: Optional[Mapping[str, str]] = None,
) -> WebhookProcessingResult:
    return WebhookPipeline().process(provider, payload, signature, headers)


__all__ = ["WebhookPipeline", "process_webhook"]
