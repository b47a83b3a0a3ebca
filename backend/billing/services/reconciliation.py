"""Reconciliation of a user's subscription row, tier and credit ledger.

Every mutating operation runs as one ``transaction.atomic()`` block that
locks the user row first and the subscription row second, so concurrent
webhook deliveries and user actions for the same user serialize at the
database while different users proceed independently. Handlers always write
absolute target values; credit grants are guarded by ledger idempotency keys.
"""
from __future__ import annotations

import calendar
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone

from billing.constants import (
    FREE_PLAN_ID,
    FREE_PLAN_PERIOD_DAYS,
    FREE_SIGNUP_KEY,
    PLAN_ACTIVATION_KEY,
)
from billing.models import Subscription, SubscriptionEvent, TokenTransaction
from billing.observability.logging import log_billing_event
from billing.observability.metrics import CONSISTENCY_FIXES, CONSISTENCY_ISSUES_FOUND

from .gateway import PaymentGateway, PaymentGatewayError, PaymentResourceMissing, get_payment_gateway
from .plans import get_plan, is_known_plan, is_paid_plan
from .token_ledger import grant_credits, has_transaction_of_type, record_subscription_marker

logger = logging.getLogger(__name__)

User = get_user_model()

CANCELLABLE_STATUSES = (
    Subscription.Status.ACTIVE,
    Subscription.Status.PAST_DUE,
    Subscription.Status.TRIAL,
)


class ReconciliationError(Exception):
    """Base exception for reconciliation failures."""


class InvalidUserIdentifier(ReconciliationError):
    """Raised when a user id is missing or malformed."""


class InvalidPlan(ReconciliationError):
    """Raised when a plan id is unknown or not valid for the operation."""


class UserNotFound(ReconciliationError):
    """Raised when the user row does not exist."""


@dataclass(frozen=True)
class SubscriptionResult:
    success: bool
    message: str = ""
    already_subscribed: bool = False
    credits_granted: int = 0
    subscription: Optional[Subscription] = None


@dataclass(frozen=True)
class ConsistencyReport:
    user_id: str
    is_consistent: bool
    issues: List[str] = field(default_factory=list)
    expected_user_type: Optional[str] = None
    user_type: Optional[str] = None


# Validation ----------------------------------------------------------------------------


def validate_user_id(user_id: Any) -> uuid.UUID:
    """Return ``user_id`` as a UUID or raise ``InvalidUserIdentifier``."""

    if user_id in (None, ""):
        raise InvalidUserIdentifier("User ID is required.")
    if isinstance(user_id, uuid.UUID):
        return user_id
    try:
        return uuid.UUID(str(user_id).strip())
    except (TypeError, ValueError, AttributeError) as exc:
        raise InvalidUserIdentifier("Invalid user ID format.") from exc


# Consistency rules ---------------------------------------------------------------------


def expected_user_type(subscription: Optional[Subscription], now: Optional[datetime] = None) -> str:
    """The tier a user must carry given their subscription row."""

    if subscription is None:
        return FREE_PLAN_ID
    if subscription.is_current(now):
        return subscription.plan_id
    return FREE_PLAN_ID


def collect_consistency_issues(user, subscription: Optional[Subscription], now: Optional[datetime] = None) -> List[str]:
    now = now or timezone.now()
    issues: List[str] = []
    if subscription is None:
        if user.user_type != FREE_PLAN_ID:
            issues.append(f'User has no subscription but userType is "{user.user_type}" instead of "FREE"')
        return issues

    if subscription.is_current(now):
        if user.user_type != subscription.plan_id:
            issues.append(
                f'User type "{user.user_type}" does not match active subscription plan "{subscription.plan_id}"'
            )
        return issues

    if user.user_type != FREE_PLAN_ID:
        state = "expired" if subscription.status == Subscription.Status.ACTIVE else subscription.status
        issues.append(
            f'User has {state} subscription but userType is "{user.user_type}" instead of "FREE"'
        )
    return issues


# Operations ----------------------------------------------------------------------------


def activate_free_plan(user_id, *, source: str = SubscriptionEvent.Source.API, event_id: str = "") -> SubscriptionResult:
    """Put the user on the FREE plan; grants the signup bonus at most once ever."""

    try:
        user_uuid = validate_user_id(user_id)
    except InvalidUserIdentifier as exc:
        return SubscriptionResult(success=False, message=str(exc))

    now = timezone.now()
    with transaction.atomic():
        user = _lock_user(user_uuid)
        if user is None:
            return SubscriptionResult(success=False, message="User not found.")
        subscription = _lock_subscription(user)

        if subscription is not None and subscription.plan_id == FREE_PLAN_ID and subscription.is_current(now):
            return SubscriptionResult(
                success=True,
                message="Free plan is already active.",
                already_subscribed=True,
                subscription=subscription,
            )
        if _has_live_paid_subscription(subscription, now):
            return SubscriptionResult(
                success=False,
                message="User already has an active paid subscription. Please cancel it before activating the free plan.",
                subscription=subscription,
            )

        previous = _snapshot(subscription)
        subscription = _upsert_subscription(
            user,
            subscription,
            plan_id=FREE_PLAN_ID,
            status=Subscription.Status.ACTIVE,
            current_period_start=now,
            current_period_end=now + timedelta(days=FREE_PLAN_PERIOD_DAYS),
            cancel_at_period_end=False,
        )
        _set_user_type(user, FREE_PLAN_ID)

        credits_granted = 0
        # Checked under the user row lock so two concurrent activations cannot both grant.
        if not has_transaction_of_type(user.pk, TokenTransaction.TransactionType.FREE_SIGNUP):
            bonus = int(getattr(settings, "FREE_SIGNUP_CREDITS", 5))
            result = grant_credits(
                user.pk,
                bonus,
                TokenTransaction.TransactionType.FREE_SIGNUP,
                description="Free plan signup bonus",
                idempotency_key=FREE_SIGNUP_KEY.format(user_id=user.pk),
            )
            credits_granted = bonus if result.created else 0

        _record_event(user, subscription, previous, reason="free_plan_activated", source=source, event_id=event_id)

    log_billing_event(
        message="free_plan_activated",
        user_id=str(user_uuid),
        source=source,
        extra={"credits_granted": credits_granted},
    )
    return SubscriptionResult(
        success=True,
        message="Free plan activated.",
        credits_granted=credits_granted,
        subscription=subscription,
    )


def activate_paid_plan(
    user_id,
    plan_id: str,
    provider_subscription_id: Optional[str] = None,
    *,
    checkout_session_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    period_end: Optional[datetime] = None,
    duration_months: int = 1,
    referral_code: Optional[str] = None,
    referral_use_id: Optional[str] = None,
    event_id: str = "",
    source: str = SubscriptionEvent.Source.WEBHOOK,
) -> SubscriptionResult:
    """Activate a paid tier after a successful checkout and grant its allotment once.

    The grant is keyed on the checkout session (falling back to the provider
    subscription id), so replaying the same checkout never credits twice and
    never rewinds later state changes, no matter how late the redelivery
    arrives.
    """

    try:
        user_uuid = validate_user_id(user_id)
    except InvalidUserIdentifier as exc:
        return SubscriptionResult(success=False, message=str(exc))
    if not is_paid_plan(plan_id):
        return SubscriptionResult(success=False, message=f"Invalid paid plan '{plan_id}'.")

    plan = get_plan(plan_id)
    now = timezone.now()
    reference = checkout_session_id or provider_subscription_id or event_id
    idempotency_key = PLAN_ACTIVATION_KEY.format(reference=reference) if reference else None
    if idempotency_key is None:
        logger.warning("Activating %s for user %s without a checkout reference; grant is not deduplicated.", plan.id, user_uuid)

    with transaction.atomic():
        user = _lock_user(user_uuid)
        if user is None:
            return SubscriptionResult(success=False, message="User not found.")
        subscription = _lock_subscription(user)

        already_applied = bool(idempotency_key) and TokenTransaction.objects.filter(
            idempotency_key=idempotency_key
        ).exists()
        if already_applied:
            result = SubscriptionResult(
                success=True,
                message=f"{plan.name} plan already activated for this checkout.",
                already_subscribed=True,
                subscription=subscription,
            )
        else:
            previous = _snapshot(subscription)
            values: Dict[str, Any] = {
                "plan_id": plan.id,
                "status": Subscription.Status.ACTIVE,
                "current_period_start": now,
                "current_period_end": period_end or add_months(now, duration_months),
                "cancel_at_period_end": False,
            }
            if provider_subscription_id:
                values["provider_subscription_id"] = provider_subscription_id
            if customer_id:
                values["provider_customer_id"] = customer_id
            subscription = _upsert_subscription(user, subscription, **values)
            _set_user_type(user, plan.id)

            grant_credits(
                user.pk,
                plan.tokens,
                TokenTransaction.TransactionType.SUBSCRIPTION,
                description=f"{plan.name} plan subscription ({plan.tokens} credits)",
                idempotency_key=idempotency_key,
            )
            _record_event(
                user,
                subscription,
                previous,
                reason="paid_plan_activated",
                source=source,
                event_id=event_id,
                metadata={"checkout_session_id": checkout_session_id or "", "credits_granted": plan.tokens},
            )
            result = SubscriptionResult(
                success=True,
                message=f"{plan.name} plan activated.",
                credits_granted=plan.tokens,
                subscription=subscription,
            )

    log_billing_event(
        message="paid_plan_activated",
        user_id=str(user_uuid),
        event_id=event_id or None,
        source=source,
        extra={"plan_id": plan.id, "credits_granted": result.credits_granted, "duplicate": result.already_subscribed},
    )

    # Settlement is idempotent on its own, so it also runs for a replayed checkout
    # whose first attempt committed the activation but not the referral.
    if referral_code or referral_use_id:
        from .referrals import settle_referral

        settlement = settle_referral(
            referred_user_id=user_uuid,
            plan_id=plan.id,
            referral_code=referral_code,
            referral_use_id=referral_use_id,
        )
        logger.info("Referral settlement for user %s: %s", user_uuid, settlement.message)

    return result


def update_user_subscription(
    user_id,
    *,
    plan_id: str,
    status: str,
    current_period_start: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
    cancel_at_period_end: Optional[bool] = None,
    trial_end: Optional[datetime] = None,
    provider_subscription_id: Optional[str] = None,
    provider_customer_id: Optional[str] = None,
    tokens_to_add: int = 0,
    idempotency_key: Optional[str] = None,
    source: str = SubscriptionEvent.Source.API,
    event_id: str = "",
    reason: str = "subscription_updated",
) -> SubscriptionResult:
    """Write absolute subscription values; ``user_type`` follows the plan only while ACTIVE."""

    try:
        user_uuid = validate_user_id(user_id)
    except InvalidUserIdentifier as exc:
        return SubscriptionResult(success=False, message=str(exc))
    if not is_known_plan(plan_id):
        return SubscriptionResult(success=False, message=f"Invalid plan '{plan_id}'.")
    if status not in Subscription.Status.values:
        return SubscriptionResult(success=False, message=f"Invalid subscription status '{status}'.")
    if tokens_to_add < 0:
        return SubscriptionResult(success=False, message="tokens_to_add cannot be negative.")

    plan = get_plan(plan_id)
    with transaction.atomic():
        user = _lock_user(user_uuid)
        if user is None:
            return SubscriptionResult(success=False, message="User not found.")
        subscription = _lock_subscription(user)
        previous = _snapshot(subscription)

        values: Dict[str, Any] = {"plan_id": plan.id, "status": status}
        optional_values = {
            "current_period_start": current_period_start,
            "current_period_end": current_period_end,
            "cancel_at_period_end": cancel_at_period_end,
            "trial_end": trial_end,
            "provider_subscription_id": provider_subscription_id,
            "provider_customer_id": provider_customer_id,
        }
        values.update({key: value for key, value in optional_values.items() if value is not None})
        subscription = _upsert_subscription(user, subscription, **values)

        _set_user_type(user, plan.id if status == Subscription.Status.ACTIVE else FREE_PLAN_ID)

        credits_granted = 0
        if tokens_to_add:
            grant = grant_credits(
                user.pk,
                tokens_to_add,
                TokenTransaction.TransactionType.SUBSCRIPTION,
                description=f"{plan.name} plan subscription ({tokens_to_add} credits)",
                idempotency_key=idempotency_key,
            )
            credits_granted = tokens_to_add if grant.created else 0

        _record_event(user, subscription, previous, reason=reason, source=source, event_id=event_id)

    return SubscriptionResult(
        success=True,
        message="Subscription updated.",
        credits_granted=credits_granted,
        subscription=subscription,
    )


def cancel_user_subscription(
    user_id,
    immediate: bool = False,
    *,
    gateway: Optional[PaymentGateway] = None,
    source: str = SubscriptionEvent.Source.API,
    event_id: str = "",
) -> SubscriptionResult:
    """Cancel with the provider, then locally.

    Deferred cancellation only sets ``cancel_at_period_end``; the status and
    tier stay as they are until the period ends. Immediate cancellation
    marks the row CANCELED and drops ``user_type`` to FREE.
    """

    try:
        user_uuid = validate_user_id(user_id)
    except InvalidUserIdentifier as exc:
        return SubscriptionResult(success=False, message=str(exc))

    current = Subscription.objects.filter(user_id=user_uuid).first()
    if not _is_cancellable(current):
        return SubscriptionResult(success=False, message="No active subscription found.")

    # Provider call happens before the local transaction so no row lock is held over the network.
    if current.provider_subscription_id:
        gateway = gateway or get_payment_gateway()
        try:
            gateway.cancel_subscription(current, immediate=immediate)
        except PaymentResourceMissing:
            logger.warning("Provider subscription for user %s is missing; cancelling locally only.", user_uuid)
        except PaymentGatewayError as exc:
            logger.error("Provider rejected cancellation for user %s: %s", user_uuid, exc)
            return SubscriptionResult(success=False, message="Unable to cancel subscription with the payment provider.")

    now = timezone.now()
    with transaction.atomic():
        user = _lock_user(user_uuid)
        if user is None:
            return SubscriptionResult(success=False, message="User not found.")
        subscription = _lock_subscription(user)
        if subscription is not None and subscription.status == Subscription.Status.CANCELED:
            # A provider webhook finished the cancellation while we were calling out.
            return SubscriptionResult(success=True, message="Subscription canceled.", subscription=subscription)
        if not _is_cancellable(subscription):
            return SubscriptionResult(success=False, message="No active subscription found.")
        previous = _snapshot(subscription)

        if immediate:
            subscription = _upsert_subscription(
                user,
                subscription,
                status=Subscription.Status.CANCELED,
                cancel_at_period_end=False,
            )
        else:
            subscription = _upsert_subscription(user, subscription, cancel_at_period_end=True)
        _set_user_type(user, expected_user_type(subscription, now))
        record_subscription_marker(user.pk, "Subscription canceled")
        _record_event(
            user,
            subscription,
            previous,
            reason="canceled_immediately" if immediate else "cancel_at_period_end",
            source=source,
            event_id=event_id,
        )

    log_billing_event(message="subscription_canceled", user_id=str(user_uuid), source=source, extra={"immediate": immediate})
    message = "Subscription canceled." if immediate else "Subscription will be canceled at the end of the billing period."
    return SubscriptionResult(success=True, message=message, subscription=subscription)


def resume_user_subscription(
    user_id,
    *,
    gateway: Optional[PaymentGateway] = None,
    source: str = SubscriptionEvent.Source.API,
) -> SubscriptionResult:
    """Undo a deferred cancellation while the paid period is still running."""

    try:
        user_uuid = validate_user_id(user_id)
    except InvalidUserIdentifier as exc:
        return SubscriptionResult(success=False, message=str(exc))

    now = timezone.now()
    current = Subscription.objects.filter(user_id=user_uuid).first()
    if not _is_resumable(current, now):
        return SubscriptionResult(success=False, message="No subscription pending cancellation was found.")

    if current.provider_subscription_id:
        gateway = gateway or get_payment_gateway()
        try:
            gateway.resume_subscription(current)
        except PaymentResourceMissing:
            logger.warning("Provider subscription for user %s is missing; resuming locally only.", user_uuid)
        except PaymentGatewayError as exc:
            logger.error("Provider rejected resume for user %s: %s", user_uuid, exc)
            return SubscriptionResult(success=False, message="Unable to resume subscription with the payment provider.")

    with transaction.atomic():
        user = _lock_user(user_uuid)
        if user is None:
            return SubscriptionResult(success=False, message="User not found.")
        subscription = _lock_subscription(user)
        if not _is_resumable(subscription, now):
            return SubscriptionResult(success=False, message="No subscription pending cancellation was found.")
        previous = _snapshot(subscription)

        subscription = _upsert_subscription(
            user,
            subscription,
            status=Subscription.Status.ACTIVE,
            cancel_at_period_end=False,
        )
        _set_user_type(user, subscription.plan_id)
        record_subscription_marker(user.pk, "Subscription resumed")
        _record_event(user, subscription, previous, reason="resumed", source=source)

    log_billing_event(message="subscription_resumed", user_id=str(user_uuid), source=source)
    return SubscriptionResult(success=True, message="Subscription resumed.", subscription=subscription)


def validate_user_consistency(user_id) -> ConsistencyReport:
    """Read-only check of the user_type / subscription invariant."""

    try:
        user_uuid = validate_user_id(user_id)
    except InvalidUserIdentifier as exc:
        return ConsistencyReport(user_id=str(user_id), is_consistent=False, issues=[str(exc)])

    user = User.objects.filter(pk=user_uuid).first()
    if user is None:
        return ConsistencyReport(user_id=str(user_uuid), is_consistent=False, issues=["User not found"])

    subscription = Subscription.objects.filter(user=user).first()
    now = timezone.now()
    issues = collect_consistency_issues(user, subscription, now)
    return ConsistencyReport(
        user_id=str(user_uuid),
        is_consistent=not issues,
        issues=issues,
        expected_user_type=expected_user_type(subscription, now),
        user_type=user.user_type,
    )


def fix_user_consistency(user_id, *, source: str = SubscriptionEvent.Source.CONSISTENCY) -> SubscriptionResult:
    """Local-only repair trusting the stored subscription row as ground truth."""

    report = validate_user_consistency(user_id)
    if report.is_consistent:
        return SubscriptionResult(success=True, message="User data is already consistent.")
    if report.expected_user_type is None:
        # Invalid identifier or missing user; nothing to repair.
        CONSISTENCY_FIXES.labels(outcome="failed").inc()
        return SubscriptionResult(success=False, message="; ".join(report.issues))

    CONSISTENCY_ISSUES_FOUND.inc()
    user_uuid = validate_user_id(user_id)
    with transaction.atomic():
        user = _lock_user(user_uuid)
        if user is None:
            CONSISTENCY_FIXES.labels(outcome="failed").inc()
            return SubscriptionResult(success=False, message="User not found.")
        subscription = _lock_subscription(user)
        target = expected_user_type(subscription)
        previous_user_type = user.user_type
        if previous_user_type != target:
            _set_user_type(user, target)
            SubscriptionEvent.objects.create(
                user=user,
                subscription=subscription,
                previous_status=subscription.status if subscription else "",
                new_status=subscription.status if subscription else "",
                previous_plan_id=previous_user_type,
                new_plan_id=target,
                reason="user_type_repaired",
                source=source,
                metadata={"issues": report.issues},
            )

    post = validate_user_consistency(user_uuid)
    logger.info(
        "Consistency repair for user %s: %s -> %s (consistent=%s, remaining issues=%s)",
        user_uuid,
        previous_user_type,
        target,
        post.is_consistent,
        post.issues,
    )
    if not post.is_consistent:
        CONSISTENCY_FIXES.labels(outcome="failed").inc()
        return SubscriptionResult(success=False, message="; ".join(post.issues))

    CONSISTENCY_FIXES.labels(outcome="fixed").inc()
    return SubscriptionResult(success=True, message=f'User type corrected from "{previous_user_type}" to "{target}".')


def expire_lapsed_subscription(subscription_id, *, now: Optional[datetime] = None) -> bool:
    """Close out one ACTIVE subscription whose period has ended; returns True when changed."""

    now = now or timezone.now()
    grace = timedelta(hours=int(getattr(settings, "BILLING_EXPIRY_GRACE_HOURS", 24)))
    owner_id = Subscription.objects.filter(pk=subscription_id).values_list("user_id", flat=True).first()
    if owner_id is None:
        return False

    with transaction.atomic():
        user = _lock_user(owner_id)
        subscription = _lock_subscription(user) if user is not None else None
        if subscription is None or subscription.status != Subscription.Status.ACTIVE:
            return False
        if subscription.current_period_end is None or subscription.current_period_end > now:
            return False
        # Provider-managed renewals get a grace window for the invoice webhook to arrive.
        if (
            subscription.provider_subscription_id
            and not subscription.cancel_at_period_end
            and subscription.current_period_end + grace > now
        ):
            return False

        previous = _snapshot(subscription)
        subscription = _upsert_subscription(
            user,
            subscription,
            status=Subscription.Status.CANCELED if subscription.cancel_at_period_end else Subscription.Status.INACTIVE,
        )
        _set_user_type(user, FREE_PLAN_ID)
        _record_event(user, subscription, previous, reason="period_elapsed", source=SubscriptionEvent.Source.TASK)
    return True


# Helpers -------------------------------------------------------------------------------


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _is_resumable(subscription: Optional[Subscription], now: datetime) -> bool:
    return (
        subscription is not None
        and subscription.cancel_at_period_end
        and subscription.status == Subscription.Status.ACTIVE
        and subscription.current_period_end is not None
        and subscription.current_period_end > now
    )


def _is_cancellable(subscription: Optional[Subscription]) -> bool:
    return subscription is not None and subscription.status in CANCELLABLE_STATUSES


def _has_live_paid_subscription(subscription: Optional[Subscription], now: datetime) -> bool:
    """True while the provider may still bill the user for a paid plan."""
    if subscription is None or not is_paid_plan(subscription.plan_id):
        return False
    if subscription.is_current(now):
        return True
    return bool(subscription.provider_subscription_id) and subscription.status in (
        Subscription.Status.PAST_DUE,
        Subscription.Status.TRIAL,
    )


def _lock_user(user_uuid) -> Optional[User]:
    return User.objects.select_for_update().filter(pk=user_uuid).first()


def _lock_subscription(user) -> Optional[Subscription]:
    return Subscription.objects.select_for_update().filter(user=user).first()


def _set_user_type(user, user_type: str) -> None:
    if user.user_type == user_type:
        return
    user.user_type = user_type
    user.save(update_fields=["user_type", "updated_at"])


def _upsert_subscription(user, subscription: Optional[Subscription], **values) -> Subscription:
    if subscription is None:
        return Subscription.objects.create(user=user, **values)

    changed = []
    for field_name, value in values.items():
        if getattr(subscription, field_name) != value:
            setattr(subscription, field_name, value)
            changed.append(field_name)
    if changed:
        subscription.save(update_fields=changed + ["updated_at"])
    return subscription


def _snapshot(subscription: Optional[Subscription]) -> Dict[str, str]:
    if subscription is None:
        return {"status": "", "plan_id": ""}
    return {"status": subscription.status, "plan_id": subscription.plan_id}


def _record_event(
    user,
    subscription: Subscription,
    previous: Dict[str, str],
    *,
    reason: str,
    source: str,
    event_id: str = "",
    metadata: Optional[Dict[str, Any]] = None,
) -> SubscriptionEvent:
    return SubscriptionEvent.objects.create(
        user=user,
        subscription=subscription,
        previous_status=previous["status"],
        new_status=subscription.status,
        previous_plan_id=previous["plan_id"],
        new_plan_id=subscription.plan_id,
        reason=reason,
        source=source,
        event_id=event_id or "",
        metadata=metadata,
    )
