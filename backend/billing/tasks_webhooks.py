"""Webhook event handler implementations and the dispatcher that routes to them."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from django.contrib.auth import get_user_model
from django.db import transaction

from billing.constants import TOKEN_PURCHASE_KEY
from billing.models import Subscription, SubscriptionEvent, TokenTransaction
from billing.observability.metrics import PAYMENT_FAILURE_COUNT
from billing.services.gateway import get_payment_gateway
from billing.services.plans import is_known_plan
from billing.services.reconciliation import (
    InvalidUserIdentifier,
    activate_paid_plan,
    update_user_subscription,
    validate_user_id,
)
from billing.services.token_ledger import IdempotencyConflict, grant_credits
from billing.services.webhook_events import EventType, WebhookEvent, _coerce_timestamp

logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP: Dict[str, str] = {
    "active": Subscription.Status.ACTIVE,
    "trialing": Subscription.Status.TRIAL,
    "past_due": Subscription.Status.PAST_DUE,
    "unpaid": Subscription.Status.PAST_DUE,
    "canceled": Subscription.Status.CANCELED,
    "incomplete": Subscription.Status.PENDING,
}


class WebhookProcessingError(Exception):
    """Raised when an event can never be processed; the provider should not retry."""


@dataclass(frozen=True)
class WebhookProcessingResult:
    """Uniform outcome of processing one webhook delivery."""

    success: bool
    event_id: str
    event_type: str
    message: str = ""
    error: str = ""
    should_retry: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def map_provider_status(status: Optional[str]) -> str:
    return STRIPE_STATUS_MAP.get((status or "").lower(), Subscription.Status.INACTIVE)


def dispatch_event(event: WebhookEvent) -> WebhookProcessingResult:
    """Route a normalized event to its handler inside one transaction."""

    handler: Optional[Callable[[WebhookEvent], str]] = {
        EventType.PAYMENT_SUCCEEDED: _handle_payment_succeeded,
        EventType.PAYMENT_FAILED: _handle_payment_failed,
        EventType.SUBSCRIPTION_CREATED: _handle_subscription_changed,
        EventType.SUBSCRIPTION_UPDATED: _handle_subscription_changed,
        EventType.SUBSCRIPTION_CANCELED: _handle_subscription_canceled,
        EventType.INVOICE_PAID: _handle_invoice_paid,
        EventType.INVOICE_FAILED: _handle_invoice_failed,
        EventType.CUSTOMER_UPDATED: _handle_customer_updated,
    }.get(event.type)

    if handler is None:
        logger.info("No handler registered for event type '%s'.", event.type)
        return WebhookProcessingResult(True, event.id, event.type.value, message="No action required")

    try:
        with transaction.atomic():
            message = handler(event)
    except (WebhookProcessingError, IdempotencyConflict) as exc:
        logger.warning("Rejected %s event %s: %s", event.provider_type, event.id, exc)
        return WebhookProcessingResult(False, event.id, event.type.value, message="Event rejected", error=str(exc))
    except Exception as exc:
        # Rolled back; the provider redelivers later.
        logger.exception("Error handling %s event %s", event.provider_type, event.id)
        return WebhookProcessingResult(
            False,
            event.id,
            event.type.value,
            message="Event processing failed",
            error=str(exc) or type(exc).__name__,
            should_retry=True,
        )

    logger.info("Processed %s event %s: %s", event.provider_type, event.id, message)
    return WebhookProcessingResult(True, event.id, event.type.value, message=message)


# Handlers ------------------------------------------------------------------------------


def _handle_payment_succeeded(event: WebhookEvent) -> str:
    if event.provider_type == "payment_intent.succeeded":
        return "Payment intent acknowledged"

    session = event.object
    metadata = session.get("metadata") or {}
    user_id = metadata.get("userId")
    if not user_id:
        raise WebhookProcessingError("Checkout session is missing userId metadata.")

    if session.get("mode") == "payment":
        return _apply_token_purchase(session, metadata, user_id)

    plan_id = metadata.get("planName") or metadata.get("planId")
    if not plan_id:
        raise WebhookProcessingError("Checkout session is missing plan metadata.")

    result = activate_paid_plan(
        user_id,
        str(plan_id).upper(),
        _reference_id(session.get("subscription")),
        checkout_session_id=session.get("id"),
        customer_id=_reference_id(session.get("customer")),
        duration_months=_coerce_int(metadata.get("duration"), default=1),
        referral_code=metadata.get("referralCode") or None,
        referral_use_id=metadata.get("referralUseId") or None,
        event_id=event.id,
        source=SubscriptionEvent.Source.WEBHOOK,
    )
    if not result.success:
        raise WebhookProcessingError(result.message)
    return result.message


def _apply_token_purchase(session: Dict[str, Any], metadata: Dict[str, Any], user_id: str) -> str:
    tokens = _coerce_int(metadata.get("tokens"), default=0)
    session_id = session.get("id")
    if tokens <= 0 or not session_id:
        raise WebhookProcessingError("Token purchase session is missing tokens or id.")

    result = grant_credits(
        user_id,
        tokens,
        TokenTransaction.TransactionType.PURCHASE,
        description=f"Purchased {tokens} credits",
        idempotency_key=TOKEN_PURCHASE_KEY.format(session_id=session_id),
    )
    return f"Credited {tokens} purchased credits" if result.created else "Token purchase already credited"


def _handle_payment_failed(event: WebhookEvent) -> str:
    PAYMENT_FAILURE_COUNT.labels(event_type=event.provider_type).inc()
    intent = event.object
    error = (intent.get("last_payment_error") or {}).get("code") or "unknown"
    logger.warning("Payment failed for customer %s (code=%s).", _mask_identifier(_reference_id(intent.get("customer"))), error)
    return "Payment failure recorded"


def _handle_subscription_changed(event: WebhookEvent) -> str:
    payload = event.object
    metadata = payload.get("metadata") or {}
    subscription = _find_subscription(
        provider_subscription_id=payload.get("id"),
        user_id=metadata.get("userId"),
        customer_id=_reference_id(payload.get("customer")),
    )
    if subscription is None:
        logger.info("No local subscription matches provider subscription %s.", _mask_identifier(payload.get("id")))
        return "No matching subscription"
    subscription = _lock_subscription_row(subscription)

    status = map_provider_status(payload.get("status"))
    if status != Subscription.Status.CANCELED and _is_provider_canceled(subscription, payload.get("id")):
        logger.info("Ignoring late update for canceled subscription %s.", _mask_identifier(payload.get("id")))
        return "Ignored update for canceled subscription"

    plan_id = str(metadata.get("planName") or metadata.get("planId") or "").upper()
    if not is_known_plan(plan_id):
        plan_id = subscription.plan_id
    period_start, period_end = _subscription_period(payload)

    result = update_user_subscription(
        subscription.user_id,
        plan_id=plan_id,
        status=status,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=bool(payload.get("cancel_at_period_end")),
        trial_end=_coerce_timestamp(payload.get("trial_end")),
        provider_subscription_id=payload.get("id"),
        provider_customer_id=_reference_id(payload.get("customer")),
        source=SubscriptionEvent.Source.WEBHOOK,
        event_id=event.id,
        reason=f"provider:{event.provider_type}",
    )
    if not result.success:
        raise WebhookProcessingError(result.message)
    return f"Subscription set to {result.subscription.status}"


def _handle_subscription_canceled(event: WebhookEvent) -> str:
    payload = event.object
    subscription = _find_subscription(
        provider_subscription_id=payload.get("id"),
        user_id=(payload.get("metadata") or {}).get("userId"),
        customer_id=_reference_id(payload.get("customer")),
    )
    if subscription is None:
        return "No matching subscription"

    update_user_subscription(
        subscription.user_id,
        plan_id=subscription.plan_id,
        status=Subscription.Status.CANCELED,
        cancel_at_period_end=False,
        source=SubscriptionEvent.Source.WEBHOOK,
        event_id=event.id,
        reason=f"provider:{event.provider_type}",
    )
    return "Subscription canceled"


def _handle_invoice_paid(event: WebhookEvent) -> str:
    invoice = event.object
    invoice_subscription_id = _invoice_subscription_id(invoice)
    subscription = _find_subscription(
        provider_subscription_id=invoice_subscription_id,
        customer_id=_reference_id(invoice.get("customer")),
    )
    if subscription is None:
        return "No matching subscription"
    subscription = _lock_subscription_row(subscription)

    if _is_provider_canceled(subscription, invoice_subscription_id):
        logger.info(
            "Ignoring invoice %s for canceled subscription %s.",
            invoice.get("id"),
            _mask_identifier(subscription.provider_subscription_id),
        )
        return "Ignored invoice for canceled subscription"

    period_start, period_end = _extract_invoice_period(invoice)
    # Monotonic guard: a stale or duplicate invoice must not move the paid window backwards.
    current_end = subscription.current_period_end
    if current_end is not None and period_end is not None and period_end <= current_end:
        if subscription.status == Subscription.Status.ACTIVE or period_end < current_end:
            logger.info(
                "Skipping invoice %s: stale_or_duplicate_event (period_end=%s, current_period_end=%s).",
                invoice.get("id"),
                period_end.isoformat(),
                current_end.isoformat(),
            )
            return "Ignored stale or duplicate invoice"
        # Retried invoice for the current window settles a past-due row without touching the period.
        period_start = period_end = None

    update_user_subscription(
        subscription.user_id,
        plan_id=subscription.plan_id,
        status=Subscription.Status.ACTIVE,
        current_period_start=period_start,
        current_period_end=period_end,
        provider_subscription_id=invoice_subscription_id,
        source=SubscriptionEvent.Source.WEBHOOK,
        event_id=event.id,
        reason=f"provider:{event.provider_type}",
    )
    return "Subscription marked active"


def _handle_invoice_failed(event: WebhookEvent) -> str:
    invoice = event.object
    PAYMENT_FAILURE_COUNT.labels(event_type=event.provider_type).inc()
    invoice_subscription_id = _invoice_subscription_id(invoice)
    subscription = _find_subscription(
        provider_subscription_id=invoice_subscription_id,
        customer_id=_reference_id(invoice.get("customer")),
    )
    if subscription is None:
        return "No matching subscription"
    subscription = _lock_subscription_row(subscription)
    if _is_provider_canceled(subscription, invoice_subscription_id):
        return "Ignored invoice for canceled subscription"

    update_user_subscription(
        subscription.user_id,
        plan_id=subscription.plan_id,
        status=Subscription.Status.PAST_DUE,
        source=SubscriptionEvent.Source.WEBHOOK,
        event_id=event.id,
        reason=f"provider:{event.provider_type}",
    )
    return "Subscription marked past due"


def _handle_customer_updated(event: WebhookEvent) -> str:
    customer_id = event.object.get("id")
    if not customer_id:
        return "No customer reference"
    get_payment_gateway(event.provider).forget_customer(customer_id)
    return "Customer cache refreshed"


# Helpers -------------------------------------------------------------------------------


def _lock_subscription_row(subscription: Subscription) -> Subscription:
    """Re-read ``subscription`` under the user-then-subscription lock order."""
    get_user_model().objects.select_for_update().filter(pk=subscription.user_id).first()
    return Subscription.objects.select_for_update().get(pk=subscription.pk)


def _is_provider_canceled(subscription: Subscription, provider_subscription_id: Optional[str]) -> bool:
    # A deleted provider subscription never comes back; a different id means a new subscription.
    return subscription.status == Subscription.Status.CANCELED and (
        not provider_subscription_id or provider_subscription_id == subscription.provider_subscription_id
    )


def _find_subscription(
    *,
    provider_subscription_id: Optional[str] = None,
    user_id: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> Optional[Subscription]:
    if provider_subscription_id:
        subscription = Subscription.objects.filter(provider_subscription_id=provider_subscription_id).first()
        if subscription:
            return subscription
    if user_id:
        try:
            subscription = Subscription.objects.filter(user_id=validate_user_id(user_id)).first()
        except InvalidUserIdentifier:
            subscription = None
        if subscription:
            return subscription
    if customer_id:
        return Subscription.objects.filter(provider_customer_id=customer_id).order_by("-updated_at").first()
    return None


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    direct = _reference_id(invoice.get("subscription"))
    if direct:
        return direct
    # Newer API versions nest the reference under parent.subscription_details.
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return _reference_id(details.get("subscription"))


def _subscription_period(payload: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    start = payload.get("current_period_start")
    end = payload.get("current_period_end")
    if not end:
        for item in ((payload.get("items") or {}).get("data")) or []:
            if isinstance(item, dict) and item.get("current_period_end"):
                start = item.get("current_period_start")
                end = item.get("current_period_end")
                break
    return _coerce_timestamp(start), _coerce_timestamp(end)


def _extract_invoice_period(invoice: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Derive coverage window for an invoice from its line items."""

    period_start = None
    period_end = None

    lines = (invoice.get("lines") or {}).get("data") or []
    if isinstance(lines, list):
        for line in lines:
            if not isinstance(line, dict):
                continue
            line_period = line.get("period") or {}
            line_start = _coerce_timestamp(line_period.get("start"))
            line_end = _coerce_timestamp(line_period.get("end"))

            if line_start and (period_start is None or line_start < period_start):
                period_start = line_start
            if line_end and (period_end is None or line_end > period_end):
                period_end = line_end

    if period_end is None:
        period_start = _coerce_timestamp(invoice.get("period_start"))
        period_end = _coerce_timestamp(invoice.get("period_end"))
        if period_start and period_end and period_end <= period_start:
            # Stripe reports the previous window here for subscription renewals.
            return None, None

    return period_start, period_end


def _reference_id(value: Any) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return None


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _mask_identifier(identifier: Optional[str]) -> str:
    if not identifier:
        return "unknown"
    text = str(identifier)
    if len(text) <= 4:
        return text
    return f"...{text[-4:]}"


__all__ = [
    "dispatch_event",
    "map_provider_status",
    "WebhookProcessingError",
    "WebhookProcessingResult",
]
