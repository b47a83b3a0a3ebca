import pytest

from billing.models import ReferralUse, Subscription, TokenTransaction
from billing.services.checkout import create_checkout_session, verify_payment_status
from billing.services.gateway import PaymentGatewayError, PaymentStatus, PaymentStatusResult
from billing.services.reconciliation import activate_paid_plan
from billing.services.referrals import get_or_create_referral_code


@pytest.mark.django_db
def test_checkout_passes_plan_metadata_to_gateway(user, fake_gateway):
    result = create_checkout_session(user.pk, "premium", 6, promo_code="welcome10")

    assert result.success
    assert result.url == "https://checkout.test/cs_test_123"
    assert result.promo_discount == 10
    _, plan_id, duration, options = fake_gateway.calls[-1]
    assert (plan_id, duration) == ("PREMIUM", 6)
    assert options.promo_discount == 10
    assert options.metadata == {
        "userId": str(user.pk),
        "planName": "PREMIUM",
        "tokens": "250",
        "duration": "6",
        "promoCode": "WELCOME10",
        "promoDiscount": "10",
    }
    assert Subscription.objects.get(user=user).status == Subscription.Status.PENDING


@pytest.mark.django_db
@pytest.mark.parametrize(
    "plan_id,duration",
    [("FREE", 1), ("GOLD", 1), ("BASIC", 3), ("BASIC", "x")],
)
def test_checkout_rejects_invalid_plan_or_duration(user, fake_gateway, plan_id, duration):
    result = create_checkout_session(user.pk, plan_id, duration)

    assert result.success is False
    assert fake_gateway.calls == []


@pytest.mark.django_db
def test_checkout_rejects_invalid_promo(user, fake_gateway):
    result = create_checkout_session(user.pk, "BASIC", 1, promo_code="NOTREAL")

    assert result.success is False
    assert result.message == "Invalid promo code."


@pytest.mark.django_db
def test_checkout_refused_while_paid_plan_is_active(user, fake_gateway):
    activate_paid_plan(user.pk, "BASIC", "sub_1", checkout_session_id="cs_1")

    result = create_checkout_session(user.pk, "PREMIUM", 1)

    assert result.success is False
    assert "already have an active BASIC" in result.message


@pytest.mark.django_db
def test_checkout_records_pending_referral(user, make_user, fake_gateway):
    referrer = make_user()
    code = get_or_create_referral_code(referrer).referral_code

    result = create_checkout_session(user.pk, "BASIC", 1, referral_code=code)

    use = ReferralUse.objects.get(referred=user)
    metadata = fake_gateway.calls[-1][3].metadata
    assert result.referral_applied
    assert use.status == ReferralUse.Status.PENDING
    assert metadata["referralUseId"] == str(use.pk)
    assert metadata["referrerId"] == str(referrer.pk)
    assert metadata["referralCode"] == code


@pytest.mark.django_db
def test_checkout_continues_without_unusable_referral(user, fake_gateway):
    own_code = get_or_create_referral_code(user).referral_code

    result = create_checkout_session(user.pk, "BASIC", 1, referral_code=own_code)

    assert result.success
    assert result.referral_applied is False
    assert result.message == "You cannot use your own referral code."
    assert "referralCode" not in fake_gateway.calls[-1][3].metadata


@pytest.mark.django_db
def test_checkout_gateway_failure_is_reported(user, fake_gateway):
    fake_gateway.checkout_error = PaymentGatewayError("Stripe unavailable", retryable=True)

    result = create_checkout_session(user.pk, "BASIC", 1)

    assert result.success is False
    assert not Subscription.objects.filter(user=user).exists()


@pytest.mark.django_db
def test_verify_payment_catches_up_and_matches_webhook_key(user, fake_gateway):
    fake_gateway.payment_status = PaymentStatusResult(
        status=PaymentStatus.SUCCEEDED,
        subscription_id="sub_1",
        customer_id="cus_1",
        metadata={"userId": str(user.pk), "planName": "ULTIMATE", "duration": "1"},
    )

    first = verify_payment_status("cs_paid", user.pk)
    second = verify_payment_status("cs_paid", user.pk)
    webhook_replay = activate_paid_plan(user.pk, "ULTIMATE", "sub_1", checkout_session_id="cs_paid")

    user.refresh_from_db()
    assert first.activated is True
    assert second.activated is False
    assert webhook_replay.already_subscribed
    assert user.credits == 600
    assert TokenTransaction.objects.filter(user=user).count() == 1


@pytest.mark.django_db
def test_verify_payment_reports_pending_without_changes(user, fake_gateway):
    result = verify_payment_status("cs_open", user.pk)

    assert result.success
    assert result.status == PaymentStatus.PENDING
    assert not Subscription.objects.filter(user=user).exists()


@pytest.mark.django_db
def test_verify_payment_rejects_foreign_sessions(user, make_user, fake_gateway):
    other = make_user()
    fake_gateway.payment_status = PaymentStatusResult(
        status=PaymentStatus.SUCCEEDED,
        metadata={"userId": str(other.pk), "planName": "BASIC"},
    )

    result = verify_payment_status("cs_other", user.pk)

    assert result.success is False
    user.refresh_from_db()
    assert user.credits == 0
