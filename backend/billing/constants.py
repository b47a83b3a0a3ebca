"""Shared identifiers for subscription plans and ledger idempotency keys."""
from __future__ import annotations

FREE_PLAN_ID = "FREE"
BASIC_PLAN_ID = "BASIC"
PREMIUM_PLAN_ID = "PREMIUM"
ULTIMATE_PLAN_ID = "ULTIMATE"

PAID_PLAN_IDS = (BASIC_PLAN_ID, PREMIUM_PLAN_ID, ULTIMATE_PLAN_ID)
PLAN_IDS = (FREE_PLAN_ID,) + PAID_PLAN_IDS

PLAN_CHOICES = [
    (FREE_PLAN_ID, "Free"),
    (BASIC_PLAN_ID, "Basic"),
    (PREMIUM_PLAN_ID, "Premium"),
    (ULTIMATE_PLAN_ID, "Ultimate"),
]

SUPPORTED_DURATIONS = (1, 6, 12)

FREE_PLAN_PERIOD_DAYS = 365

# Ledger idempotency key formats
FREE_SIGNUP_KEY = "free-signup:{user_id}"
PLAN_ACTIVATION_KEY = "plan-activation:{reference}"
TOKEN_PURCHASE_KEY = "purchase:{session_id}"
REFERRAL_REFERRED_KEY = "referral:{use_id}:referred"
REFERRAL_REFERRER_KEY = "referral:{use_id}:referrer"

PROVIDER_STRIPE = "stripe"
