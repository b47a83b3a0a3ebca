"""Checkout initiation and post-checkout payment verification."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from django.contrib.auth import get_user_model

from billing.constants import SUPPORTED_DURATIONS
from billing.models import Subscription, SubscriptionEvent
from billing.observability.logging import log_billing_event
from billing.observability.metrics import GATEWAY_FAILURE_COUNT

from .gateway import CheckoutOptions, PaymentGateway, PaymentGatewayError, PaymentStatus, get_payment_gateway
from .plans import get_plan, is_paid_plan, validate_promo_code
from .reconciliation import InvalidUserIdentifier, activate_paid_plan, validate_user_id
from .referrals import apply_referral_code, validate_referral_code
from .webhook_events import _coerce_timestamp

logger = logging.getLogger(__name__)

User = get_user_model()


@dataclass(frozen=True)
class CheckoutSessionResult:
    success: bool
    message: str = ""
    session_id: str = ""
    url: str = ""
    referral_applied: bool = False
    promo_discount: int = 0


@dataclass(frozen=True)
class PaymentVerificationResult:
    success: bool
    status: str = ""
    message: str = ""
    plan_id: str = ""
    activated: bool = False


def create_checkout_session(
    user_id,
    plan_id: str,
    duration_months,
    *,
    referral_code: Optional[str] = None,
    promo_code: Optional[str] = None,
    gateway: Optional[PaymentGateway] = None,
) -> CheckoutSessionResult:
    """Start a hosted checkout for a paid plan.

    An unusable referral code does not block the checkout; the session is
    created without referral metadata and the reason is returned in
    ``message``. An invalid promo code does block it.
    """

    try:
        user_uuid = validate_user_id(user_id)
    except InvalidUserIdentifier as exc:
        return CheckoutSessionResult(success=False, message=str(exc))

    plan_key = (plan_id or "").strip().upper()
    if not is_paid_plan(plan_key):
        return CheckoutSessionResult(success=False, message=f"Invalid paid plan '{plan_id}'.")
    try:
        duration = int(duration_months)
    except (TypeError, ValueError):
        duration = 0
    if duration not in SUPPORTED_DURATIONS:
        return CheckoutSessionResult(success=False, message=f"Unsupported duration '{duration_months}'.")

    user = User.objects.filter(pk=user_uuid).first()
    if user is None:
        return CheckoutSessionResult(success=False, message="User not found.")

    subscription = Subscription.objects.filter(user=user).first()
    if (
        subscription is not None
        and subscription.is_paid_plan
        and subscription.is_current()
        and not subscription.cancel_at_period_end
    ):
        return CheckoutSessionResult(
            success=False,
            message=f"You already have an active {subscription.plan_id} subscription.",
        )

    plan = get_plan(plan_key)
    metadata = {
        "userId": str(user.pk),
        "planName": plan.id,
        "tokens": str(plan.tokens),
        "duration": str(duration),
    }

    promo_discount = 0
    if promo_code:
        promo = validate_promo_code(promo_code)
        if not promo.valid:
            return CheckoutSessionResult(success=False, message=promo.message)
        promo_discount = promo.discount_percentage
        metadata.update({"promoCode": promo.code, "promoDiscount": str(promo_discount)})

    notes = []
    referral_applied = False
    if referral_code:
        validation = validate_referral_code(referral_code, user.pk)
        use = apply_referral_code(user, referral_code, plan.id) if validation.valid else None
        if use is not None:
            referral_applied = True
            metadata.update(
                {
                    "referrerId": str(use.referrer_id),
                    "referralUseId": str(use.pk),
                    "referralCode": validation.referral.referral_code,
                }
            )
        else:
            notes.append(validation.message)

    gateway = gateway or get_payment_gateway()
    try:
        session = gateway.create_checkout_session(
            user,
            plan.id,
            duration,
            CheckoutOptions(
                referral_code=metadata.get("referralCode"),
                promo_code=metadata.get("promoCode"),
                promo_discount=promo_discount,
                customer_email=user.email,
                metadata=metadata,
            ),
        )
    except PaymentGatewayError as exc:
        GATEWAY_FAILURE_COUNT.labels(operation="create_checkout_session").inc()
        logger.error("Checkout session creation failed for user %s: %s", user.pk, exc)
        return CheckoutSessionResult(success=False, message="Unable to start checkout with the payment provider.")

    if subscription is None:
        Subscription.objects.get_or_create(
            user=user,
            defaults={"plan_id": plan.id, "status": Subscription.Status.PENDING},
        )

    log_billing_event(
        message="checkout_started",
        user_id=str(user.pk),
        source=SubscriptionEvent.Source.API,
        extra={"plan_id": plan.id, "duration": duration, "referral": referral_applied, "promo_discount": promo_discount},
    )
    return CheckoutSessionResult(
        success=True,
        message=" ".join(notes) or "Checkout session created.",
        session_id=session.session_id,
        url=session.url,
        referral_applied=referral_applied,
        promo_discount=promo_discount,
    )


def verify_payment_status(session_id: str, user_id, *, gateway: Optional[PaymentGateway] = None) -> PaymentVerificationResult:
    """Ask the provider about a checkout and catch up local state when it has been paid.

    Uses the same activation key as the webhook handler, so whichever of the
    two arrives second is a no-op.
    """

    try:
        user_uuid = validate_user_id(user_id)
    except InvalidUserIdentifier as exc:
        return PaymentVerificationResult(success=False, message=str(exc))
    if not session_id:
        return PaymentVerificationResult(success=False, message="session_id is required.")

    gateway = gateway or get_payment_gateway()
    try:
        status = gateway.verify_payment_status(session_id)
    except PaymentGatewayError as exc:
        GATEWAY_FAILURE_COUNT.labels(operation="verify_payment_status").inc()
        logger.error("Payment verification failed for session %s: %s", session_id, exc)
        return PaymentVerificationResult(success=False, message="Unable to verify payment with the payment provider.")

    metadata = status.metadata or {}
    if metadata.get("userId") and metadata["userId"] != str(user_uuid):
        logger.warning("User %s attempted to verify a checkout session owned by another user.", user_uuid)
        return PaymentVerificationResult(success=False, message="Checkout session does not belong to this user.")

    plan_id = str(metadata.get("planName") or "").upper()
    if status.status != PaymentStatus.SUCCEEDED:
        return PaymentVerificationResult(success=True, status=status.status, message=f"Payment {status.status}.", plan_id=plan_id)

    try:
        duration = int(metadata.get("duration") or 1)
    except (TypeError, ValueError):
        duration = 1
    activation = activate_paid_plan(
        user_uuid,
        plan_id,
        status.subscription_id,
        checkout_session_id=session_id,
        customer_id=status.customer_id,
        period_end=_coerce_timestamp(status.period_end),
        duration_months=duration,
        referral_code=metadata.get("referralCode") or None,
        referral_use_id=metadata.get("referralUseId") or None,
        source=SubscriptionEvent.Source.API,
    )
    return PaymentVerificationResult(
        success=activation.success,
        status=status.status,
        message=activation.message,
        plan_id=plan_id,
        activated=activation.success and not activation.already_subscribed,
    )
