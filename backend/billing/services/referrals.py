"""Referral codes, referral application at checkout and one-time bonus settlement."""
from __future__ import annotations

import logging
import secrets
import string
import uuid
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.utils import timezone

from billing.constants import REFERRAL_REFERRED_KEY, REFERRAL_REFERRER_KEY
from billing.models import Referral, ReferralUse, TokenTransaction
from billing.observability.logging import log_billing_event

from .token_ledger import grant_credits

logger = logging.getLogger(__name__)

User = get_user_model()

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 8


@dataclass(frozen=True)
class ReferralCodeValidation:
    valid: bool
    message: str = ""
    referral: Optional[Referral] = None

    @property
    def referrer_id(self):
        return self.referral.user_id if self.referral else None


@dataclass(frozen=True)
class ReferralSettlementResult:
    settled: bool
    message: str
    referral_use: Optional[ReferralUse] = None


def _normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def generate_referral_code() -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


def get_or_create_referral_code(user) -> Referral:
    existing = Referral.objects.filter(user=user).first()
    if existing:
        return existing
    for _ in range(5):
        try:
            with transaction.atomic():
                return Referral.objects.create(user=user, referral_code=generate_referral_code())
        except IntegrityError:
            existing = Referral.objects.filter(user=user).first()
            if existing:
                return existing
    raise RuntimeError("Unable to allocate a unique referral code.")


def validate_referral_code(code: Optional[str], user_id=None) -> ReferralCodeValidation:
    normalized = _normalize_code(code)
    if not normalized:
        return ReferralCodeValidation(valid=False, message="Referral code is required.")

    referral = Referral.objects.select_related("user").filter(referral_code=normalized).first()
    if referral is None:
        return ReferralCodeValidation(valid=False, message="Invalid referral code.")
    if user_id is not None and str(referral.user_id) == str(user_id):
        return ReferralCodeValidation(valid=False, message="You cannot use your own referral code.")
    if user_id is not None and ReferralUse.objects.filter(
        referred_id=user_id, status=ReferralUse.Status.COMPLETED
    ).exists():
        return ReferralCodeValidation(valid=False, message="A referral has already been applied to this account.")
    return ReferralCodeValidation(valid=True, message="Referral code applied.", referral=referral)


def apply_referral_code(user, code: Optional[str], plan_id: str = "") -> Optional[ReferralUse]:
    """Record a PENDING referral use for ``user``; returns None when the code is not usable."""

    validation = validate_referral_code(code, user.pk)
    if not validation.valid:
        logger.info("Referral code rejected for user %s: %s", user.pk, validation.message)
        return None

    with transaction.atomic():
        use = (
            ReferralUse.objects.select_for_update()
            .filter(referred=user, status=ReferralUse.Status.PENDING)
            .first()
        )
        if use is None:
            return ReferralUse.objects.create(
                referral=validation.referral,
                referrer_id=validation.referral.user_id,
                referred=user,
                plan_id=plan_id or "",
            )
        use.referral = validation.referral
        use.referrer_id = validation.referral.user_id
        use.plan_id = plan_id or use.plan_id
        use.save(update_fields=["referral", "referrer", "plan_id"])
        return use


def settle_referral(
    *,
    referred_user_id,
    plan_id: str,
    referral_code: Optional[str] = None,
    referral_use_id: Optional[str] = None,
) -> ReferralSettlementResult:
    """Grant the referred and referrer bonuses exactly once per referred user."""

    with transaction.atomic():
        # Lock the referred user so concurrent settlements for them serialize.
        referred = User.objects.select_for_update().filter(pk=referred_user_id).first()
        if referred is None:
            return ReferralSettlementResult(settled=False, message="Referred user not found.")

        if ReferralUse.objects.filter(referred=referred, status=ReferralUse.Status.COMPLETED).exists():
            return ReferralSettlementResult(settled=False, message="Referral already settled for this user.")

        use = _locate_pending_use(referred, referral_use_id, referral_code)
        if use is None:
            return ReferralSettlementResult(settled=False, message="No matching referral found.")
        if use.referrer_id == referred.pk:
            return ReferralSettlementResult(settled=False, message="Self-referral ignored.")

        referred_bonus = int(getattr(settings, "REFERRAL_REFERRED_BONUS", 5))
        referrer_bonus = int(getattr(settings, "REFERRAL_REFERRER_BONUS", 10))
        display_name = referred.get_full_name() or referred.username

        grant_credits(
            referred.pk,
            referred_bonus,
            TokenTransaction.TransactionType.REFERRAL,
            description="Referral bonus for subscribing using referral code",
            idempotency_key=REFERRAL_REFERRED_KEY.format(use_id=use.pk),
        )
        grant_credits(
            use.referrer_id,
            referrer_bonus,
            TokenTransaction.TransactionType.REFERRAL,
            description=f"Referral bonus for user {display_name} subscribing to {plan_id} plan",
            idempotency_key=REFERRAL_REFERRER_KEY.format(use_id=use.pk),
        )

        use.status = ReferralUse.Status.COMPLETED
        use.plan_id = plan_id or use.plan_id
        use.completed_at = timezone.now()
        use.save(update_fields=["status", "plan_id", "completed_at"])

    log_billing_event(
        message="referral_settled",
        user_id=str(referred.pk),
        extra={"referrer_id": str(use.referrer_id), "plan_id": plan_id},
    )
    return ReferralSettlementResult(settled=True, message="Referral bonuses granted.", referral_use=use)


def _locate_pending_use(referred, referral_use_id: Optional[str], referral_code: Optional[str]) -> Optional[ReferralUse]:
    if referral_use_id:
        try:
            use_uuid = uuid.UUID(str(referral_use_id))
        except (TypeError, ValueError):
            use_uuid = None
        if use_uuid is not None:
            use = (
                ReferralUse.objects.select_for_update()
                .filter(pk=use_uuid, referred=referred, status=ReferralUse.Status.PENDING)
                .first()
            )
            if use is not None:
                return use

    normalized = _normalize_code(referral_code)
    if not normalized:
        return None
    referral = Referral.objects.filter(referral_code=normalized).first()
    if referral is None:
        return None

    use = (
        ReferralUse.objects.select_for_update()
        .filter(referral=referral, referred=referred, status=ReferralUse.Status.PENDING)
        .first()
    )
    if use is not None:
        return use
    if referral.user_id == referred.pk:
        # Unsaved; the caller treats it as a self-referral no-op.
        return ReferralUse(referral=referral, referrer_id=referral.user_id, referred=referred)
    return ReferralUse.objects.create(
        referral=referral,
        referrer_id=referral.user_id,
        referred=referred,
    )
