"""Read projection of a user's wallet and subscription for dashboard callers."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from django.contrib.auth import get_user_model
from django.utils import timezone

from billing.models import Subscription

from .plans import is_paid_plan
from .reconciliation import InvalidUserIdentifier, validate_user_id

User = get_user_model()


@dataclass(frozen=True)
class SubscriptionStatus:
    user_id: str
    user_type: str
    credits: int
    credits_used: int
    subscription: Optional[Dict[str, Any]]
    is_active: bool
    is_subscribed: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _serialize_subscription(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": str(subscription.pk),
        "plan_id": subscription.plan_id,
        "status": subscription.status,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "trial_end": subscription.trial_end,
    }


def get_user_subscription_data(user_id) -> Optional[SubscriptionStatus]:
    """Return the status projection, or None for unknown or malformed user ids."""

    try:
        user_uuid = validate_user_id(user_id)
    except InvalidUserIdentifier:
        return None

    user = User.objects.filter(pk=user_uuid).only("id", "user_type", "credits", "credits_used").first()
    if user is None:
        return None

    subscription = Subscription.objects.filter(user_id=user_uuid).first()
    is_active = subscription is not None and subscription.is_current(timezone.now())
    return SubscriptionStatus(
        user_id=str(user.pk),
        user_type=user.user_type,
        credits=user.credits,
        credits_used=user.credits_used,
        subscription=_serialize_subscription(subscription) if subscription else None,
        is_active=is_active,
        is_subscribed=is_active and is_paid_plan(subscription.plan_id),
    )
