"""Celery tasks for webhook replay, consistency sweeps and subscription expiry."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from celery import shared_task
from django.db import DatabaseError
from django.utils import timezone

from billing.models import Subscription, SubscriptionEvent
from billing.services.consistency import run_consistency_sweep
from billing.services.idempotency import get_idempotency_guard
from billing.services.reconciliation import expire_lapsed_subscription, fix_user_consistency
from billing.services.webhook_events import UnsupportedEventType, parse_webhook_event
from billing.services.webhook_pipeline import WebhookPipeline
from billing.tasks_webhooks import WebhookProcessingError

logger = logging.getLogger(__name__)


@shared_task(bind=True, queue="billing", retry_backoff=True, max_retries=5)
def process_webhook_payload_async(self, provider: str, event_data: Dict[str, Any]) -> Dict[str, Any]:
    """Process an already verified event payload (replays and deferred deliveries)."""

    try:
        event = parse_webhook_event(provider, event_data)
    except UnsupportedEventType as exc:
        logger.info("Skipping unsupported %s event %s (%s).", provider, exc.event_id, exc.provider_type)
        return {"status": "ignored", "event_id": exc.event_id}
    if event is None:
        return {"status": "failed", "detail": "malformed_payload"}

    result = WebhookPipeline().process_event(event)
    if result.should_retry:
        logger.warning("Retrying %s event %s: %s", provider, event.id, result.error)
        raise self.retry(exc=WebhookProcessingError(result.error or result.message))
    return result.to_dict()


@shared_task(queue="maintenance")
def sweep_subscription_consistency(fix: bool = True, batch_size: Optional[int] = None) -> Dict[str, Any]:
    """Scan all users and repair user_type drift against the subscription row."""

    stats = run_consistency_sweep(fix=fix, batch_size=batch_size, source=SubscriptionEvent.Source.TASK)
    return {
        "total": stats.total,
        "inconsistent": stats.inconsistent,
        "fixed": stats.fixed,
        "failed": stats.failed,
    }


@shared_task(bind=True, queue="billing", autoretry_for=(DatabaseError,), retry_backoff=True, max_retries=3)
def fix_user_consistency_task(self, user_id: str) -> Dict[str, Any]:
    result = fix_user_consistency(user_id, source=SubscriptionEvent.Source.TASK)
    return {"success": result.success, "message": result.message}


@shared_task(queue="maintenance")
def expire_lapsed_subscriptions() -> Dict[str, int]:
    """Close out ACTIVE subscriptions whose paid period has ended."""

    now = timezone.now()
    candidates = Subscription.objects.filter(
        status=Subscription.Status.ACTIVE,
        current_period_end__lte=now,
    ).values_list("pk", flat=True)

    stats = {"processed": 0, "expired": 0, "failed": 0}
    for subscription_id in candidates.iterator():
        stats["processed"] += 1
        try:
            if expire_lapsed_subscription(subscription_id, now=now):
                stats["expired"] += 1
        except DatabaseError:
            stats["failed"] += 1
            logger.exception("Failed to expire subscription %s", subscription_id)

    if stats["expired"] or stats["failed"]:
        logger.info("Expired lapsed subscriptions: %s", stats)
    return stats


@shared_task(queue="maintenance")
def cleanup_idempotency_guard() -> int:
    """Evict expired entries from the in-process webhook guard."""

    removed = get_idempotency_guard().cleanup()
    logger.debug("Removed %s expired idempotency entries.", removed)
    return removed
