import pytest

from billing.models import Referral, ReferralUse, TokenTransaction
from billing.services.reconciliation import activate_paid_plan
from billing.services.referrals import (
    apply_referral_code,
    get_or_create_referral_code,
    settle_referral,
    validate_referral_code,
)


@pytest.fixture
def referrer(make_user):
    return make_user(username="referrer", email="referrer@example.com", first_name="Rae", last_name="Ferrer")


@pytest.mark.django_db
def test_get_or_create_referral_code_is_stable(user):
    first = get_or_create_referral_code(user)
    second = get_or_create_referral_code(user)

    assert first.pk == second.pk
    assert len(first.referral_code) == 8
    assert first.referral_code == first.referral_code.upper()


@pytest.mark.django_db
def test_validate_referral_code_rejects_own_and_unknown_codes(user):
    own = get_or_create_referral_code(user)

    assert validate_referral_code(own.referral_code, user.pk).valid is False
    assert validate_referral_code("NOPE1234", user.pk).message == "Invalid referral code."
    assert validate_referral_code("", user.pk).valid is False


@pytest.mark.django_db
def test_validate_referral_code_is_case_insensitive(user, referrer):
    code = get_or_create_referral_code(referrer).referral_code

    validation = validate_referral_code(f"  {code.lower()} ", user.pk)

    assert validation.valid
    assert validation.referrer_id == referrer.pk


@pytest.mark.django_db
def test_apply_referral_code_reuses_pending_use(user, referrer):
    code = get_or_create_referral_code(referrer).referral_code

    first = apply_referral_code(user, code, "BASIC")
    second = apply_referral_code(user, code, "PREMIUM")

    assert first.pk == second.pk
    assert ReferralUse.objects.filter(referred=user).count() == 1
    assert ReferralUse.objects.get(referred=user).plan_id == "PREMIUM"


@pytest.mark.django_db
def test_referral_bonuses_are_granted_once(user, referrer):
    code = get_or_create_referral_code(referrer).referral_code
    use = apply_referral_code(user, code, "PREMIUM")

    activate_paid_plan(user.pk, "PREMIUM", "sub_1", checkout_session_id="cs_1", referral_code=code, referral_use_id=str(use.pk))
    activate_paid_plan(user.pk, "PREMIUM", "sub_1", checkout_session_id="cs_1", referral_code=code, referral_use_id=str(use.pk))
    retry = settle_referral(referred_user_id=user.pk, plan_id="PREMIUM", referral_code=code)

    user.refresh_from_db()
    referrer.refresh_from_db()
    assert retry.settled is False
    assert user.credits == 250 + 5
    assert referrer.credits == 10
    assert TokenTransaction.objects.filter(type=TokenTransaction.TransactionType.REFERRAL).count() == 2
    use.refresh_from_db()
    assert use.status == ReferralUse.Status.COMPLETED
    assert use.completed_at is not None


@pytest.mark.django_db
def test_referral_bonus_descriptions(user, referrer):
    code = get_or_create_referral_code(referrer).referral_code
    apply_referral_code(user, code, "BASIC")

    settle_referral(referred_user_id=user.pk, plan_id="BASIC", referral_code=code)

    referred_row = TokenTransaction.objects.get(user=user, type=TokenTransaction.TransactionType.REFERRAL)
    referrer_row = TokenTransaction.objects.get(user=referrer, type=TokenTransaction.TransactionType.REFERRAL)
    assert referred_row.description == "Referral bonus for subscribing using referral code"
    assert referrer_row.description == "Referral bonus for user alice subscribing to BASIC plan"


@pytest.mark.django_db
def test_self_referral_never_grants(user):
    code = get_or_create_referral_code(user).referral_code

    assert apply_referral_code(user, code, "BASIC") is None
    result = settle_referral(referred_user_id=user.pk, plan_id="BASIC", referral_code=code)

    user.refresh_from_db()
    assert result.settled is False
    assert user.credits == 0
    assert not ReferralUse.objects.filter(referred=user).exists()
    assert Referral.objects.filter(user=user).count() == 1


@pytest.mark.django_db
def test_settlement_without_pending_use_is_a_noop(user):
    result = settle_referral(referred_user_id=user.pk, plan_id="BASIC", referral_code="UNKNOWN1")

    assert result.settled is False
    assert result.message == "No matching referral found."
