from datetime import timedelta

import pytest
from django.contrib.auth import get_user_model
from django.utils import timezone

from billing.models import Subscription, SubscriptionEvent, TokenTransaction
from billing.services.gateway import PaymentGatewayError, PaymentResourceMissing
from billing.services.reconciliation import (
    activate_free_plan,
    activate_paid_plan,
    add_months,
    cancel_user_subscription,
    expire_lapsed_subscription,
    fix_user_consistency,
    resume_user_subscription,
    update_user_subscription,
    validate_user_consistency,
)

User = get_user_model()


def _subscribe(user, plan_id="PREMIUM", status=Subscription.Status.ACTIVE, days=30, **extra):
    now = timezone.now()
    return Subscription.objects.create(
        user=user,
        plan_id=plan_id,
        status=status,
        current_period_start=now - timedelta(days=1),
        current_period_end=now + timedelta(days=days),
        **extra,
    )


def _force_user_type(user, user_type):
    User.objects.filter(pk=user.pk).update(user_type=user_type)


@pytest.mark.django_db
def test_activate_free_plan_grants_signup_bonus_once(user):
    first = activate_free_plan(user.pk)
    second = activate_free_plan(user.pk)

    user.refresh_from_db()
    assert first.success and first.credits_granted == 5
    assert second.success and second.already_subscribed
    assert user.credits == 5
    assert user.user_type == "FREE"
    assert TokenTransaction.objects.filter(user=user, type=TokenTransaction.TransactionType.FREE_SIGNUP).count() == 1
    subscription = Subscription.objects.get(user=user)
    assert subscription.plan_id == "FREE"
    assert subscription.status == Subscription.Status.ACTIVE


@pytest.mark.django_db
@pytest.mark.parametrize("user_id", ["", None, "not-a-uuid", "1234"])
def test_invalid_user_ids_are_rejected_before_storage(user_id, django_assert_num_queries):
    with django_assert_num_queries(0):
        result = activate_free_plan(user_id)

    assert result.success is False
    assert result.message


@pytest.mark.django_db
def test_activate_free_plan_for_unknown_user_fails():
    result = activate_free_plan("11111111-2222-3333-4444-555555555555")

    assert result.success is False
    assert result.message == "User not found."


@pytest.mark.django_db
def test_lifecycle_round_trip_never_regrants_signup_bonus(user, fake_gateway):
    activate_free_plan(user.pk)
    user.refresh_from_db()
    assert user.credits == 5

    activate_paid_plan(user.pk, "PREMIUM", "sub_1", checkout_session_id="cs_1")
    user.refresh_from_db()
    assert (user.credits, user.user_type) == (255, "PREMIUM")

    cancel_user_subscription(user.pk, immediate=True)
    result = activate_free_plan(user.pk)

    user.refresh_from_db()
    assert result.success and result.credits_granted == 0
    assert (user.credits, user.user_type) == (255, "FREE")
    assert TokenTransaction.objects.filter(user=user, type=TokenTransaction.TransactionType.FREE_SIGNUP).count() == 1


@pytest.mark.django_db
def test_activate_paid_plan_replay_does_not_double_grant(user):
    activate_paid_plan(user.pk, "BASIC", "sub_1", checkout_session_id="cs_1")
    replay = activate_paid_plan(user.pk, "BASIC", "sub_1", checkout_session_id="cs_1")

    user.refresh_from_db()
    assert replay.success and replay.already_subscribed
    assert user.credits == 60
    assert TokenTransaction.objects.filter(user=user, credits=60).count() == 1


@pytest.mark.django_db
def test_late_checkout_replay_does_not_undo_cancellation(user, fake_gateway):
    activate_paid_plan(user.pk, "BASIC", "sub_1", checkout_session_id="cs_1")
    cancel_user_subscription(user.pk, immediate=True)

    activate_paid_plan(user.pk, "BASIC", "sub_1", checkout_session_id="cs_1")

    user.refresh_from_db()
    assert user.user_type == "FREE"
    assert Subscription.objects.get(user=user).status == Subscription.Status.CANCELED


@pytest.mark.django_db
def test_activate_paid_plan_rejects_free_and_unknown_plans(user):
    assert activate_paid_plan(user.pk, "FREE").success is False
    assert activate_paid_plan(user.pk, "GOLD").success is False
    assert not Subscription.objects.filter(user=user).exists()


@pytest.mark.django_db
def test_activate_paid_plan_period_follows_duration(user):
    before = timezone.now()
    result = activate_paid_plan(user.pk, "ULTIMATE", checkout_session_id="cs_12", duration_months=12)

    period_end = result.subscription.current_period_end
    assert add_months(before, 12) - timedelta(minutes=1) <= period_end <= add_months(timezone.now(), 12)


@pytest.mark.django_db
@pytest.mark.parametrize(
    "status,expected",
    [
        (Subscription.Status.ACTIVE, "BASIC"),
        (Subscription.Status.PAST_DUE, "FREE"),
        (Subscription.Status.CANCELED, "FREE"),
        (Subscription.Status.INACTIVE, "FREE"),
        (Subscription.Status.TRIAL, "FREE"),
        (Subscription.Status.PENDING, "FREE"),
    ],
)
def test_user_type_is_driven_by_subscription_status(user, status, expected):
    result = update_user_subscription(
        user.pk,
        plan_id="BASIC",
        status=status,
        current_period_end=timezone.now() + timedelta(days=30),
    )

    user.refresh_from_db()
    assert result.success
    assert user.user_type == expected
    assert Subscription.objects.get(user=user).status == status


@pytest.mark.django_db
def test_update_user_subscription_grants_tokens_once_per_key(user):
    for _ in range(2):
        update_user_subscription(
            user.pk,
            plan_id="PREMIUM",
            status=Subscription.Status.ACTIVE,
            tokens_to_add=250,
            idempotency_key="plan-activation:sub_renewal",
        )

    user.refresh_from_db()
    assert user.credits == 250


@pytest.mark.django_db
def test_update_user_subscription_validates_inputs(user):
    assert update_user_subscription(user.pk, plan_id="GOLD", status="ACTIVE").success is False
    assert update_user_subscription(user.pk, plan_id="BASIC", status="LAPSED").success is False
    assert update_user_subscription(user.pk, plan_id="BASIC", status="ACTIVE", tokens_to_add=-1).success is False


@pytest.mark.django_db
def test_consistency_flags_paid_user_type_without_subscription(user):
    _force_user_type(user, "PREMIUM")

    report = validate_user_consistency(user.pk)

    assert report.is_consistent is False
    assert report.issues == ['User has no subscription but userType is "PREMIUM" instead of "FREE"']


@pytest.mark.django_db
def test_consistency_flags_mismatched_active_plan(user):
    _subscribe(user, "PREMIUM")

    report = validate_user_consistency(user.pk)

    assert report.issues == ['User type "FREE" does not match active subscription plan "PREMIUM"']
    assert report.expected_user_type == "PREMIUM"


@pytest.mark.django_db
def test_consistency_flags_paid_user_type_on_canceled_subscription(user):
    _subscribe(user, "BASIC", status=Subscription.Status.CANCELED)
    _force_user_type(user, "BASIC")

    report = validate_user_consistency(user.pk)

    assert report.issues == ['User has CANCELED subscription but userType is "BASIC" instead of "FREE"']


@pytest.mark.django_db
def test_consistency_flags_expired_active_subscription(user):
    _subscribe(user, "BASIC", days=-1)
    _force_user_type(user, "BASIC")

    report = validate_user_consistency(user.pk)

    assert report.issues == ['User has expired subscription but userType is "BASIC" instead of "FREE"']
    assert report.expected_user_type == "FREE"


@pytest.mark.django_db
def test_fix_user_consistency_converges(user):
    _subscribe(user, "ULTIMATE")

    fixed = fix_user_consistency(user.pk)
    again = fix_user_consistency(user.pk)

    user.refresh_from_db()
    assert fixed.success
    assert user.user_type == "ULTIMATE"
    assert validate_user_consistency(user.pk).is_consistent
    assert again.success and again.message == "User data is already consistent."
    assert SubscriptionEvent.objects.filter(user=user, reason="user_type_repaired").count() == 1


@pytest.mark.django_db
def test_deferred_cancel_keeps_access_until_period_end(user, fake_gateway):
    activate_paid_plan(user.pk, "PREMIUM", "sub_123", checkout_session_id="cs_1")

    result = cancel_user_subscription(user.pk)

    user.refresh_from_db()
    subscription = Subscription.objects.get(user=user)
    assert result.success
    assert fake_gateway.calls[-1] == ("cancel", "sub_123", False)
    assert subscription.status == Subscription.Status.ACTIVE
    assert subscription.cancel_at_period_end is True
    assert user.user_type == "PREMIUM"
    marker = TokenTransaction.objects.filter(user=user, credits=0).get()
    assert marker.description == "Subscription canceled"


@pytest.mark.django_db
def test_immediate_cancel_drops_to_free(user, fake_gateway):
    activate_paid_plan(user.pk, "PREMIUM", "sub_123", checkout_session_id="cs_1")

    cancel_user_subscription(user.pk, immediate=True)

    user.refresh_from_db()
    assert Subscription.objects.get(user=user).status == Subscription.Status.CANCELED
    assert user.user_type == "FREE"
    assert user.credits == 250


@pytest.mark.django_db
def test_cancel_proceeds_locally_when_provider_subscription_is_gone(user, fake_gateway):
    activate_paid_plan(user.pk, "BASIC", "sub_gone", checkout_session_id="cs_1")
    fake_gateway.cancel_error = PaymentResourceMissing("No such subscription", code="resource_missing")

    result = cancel_user_subscription(user.pk, immediate=True)

    assert result.success
    assert Subscription.objects.get(user=user).status == Subscription.Status.CANCELED


@pytest.mark.django_db
def test_cancel_leaves_state_untouched_when_provider_fails(user, fake_gateway):
    activate_paid_plan(user.pk, "BASIC", "sub_1", checkout_session_id="cs_1")
    fake_gateway.cancel_error = PaymentGatewayError("Card network down", retryable=True)

    result = cancel_user_subscription(user.pk, immediate=True)

    user.refresh_from_db()
    assert result.success is False
    assert Subscription.objects.get(user=user).status == Subscription.Status.ACTIVE
    assert user.user_type == "BASIC"


@pytest.mark.django_db
def test_deferred_cancel_of_past_due_subscription_keeps_status(user, fake_gateway):
    activate_paid_plan(user.pk, "PREMIUM", "sub_1", checkout_session_id="cs_1")
    update_user_subscription(user.pk, plan_id="PREMIUM", status=Subscription.Status.PAST_DUE)

    result = cancel_user_subscription(user.pk)

    user.refresh_from_db()
    subscription = Subscription.objects.get(user=user)
    assert result.success
    assert subscription.status == Subscription.Status.PAST_DUE
    assert subscription.cancel_at_period_end is True
    assert user.user_type == "FREE"
    assert validate_user_consistency(user.pk).is_consistent


@pytest.mark.django_db
def test_cancel_does_not_revive_row_canceled_during_provider_call(user, fake_gateway):
    activate_paid_plan(user.pk, "PREMIUM", "sub_1", checkout_session_id="cs_1")

    def _cancel_and_deliver_webhook(subscription, immediate=False):
        update_user_subscription(user.pk, plan_id="PREMIUM", status=Subscription.Status.CANCELED)
        return True

    fake_gateway.cancel_subscription = _cancel_and_deliver_webhook

    result = cancel_user_subscription(user.pk)

    user.refresh_from_db()
    subscription = Subscription.objects.get(user=user)
    assert result.success
    assert subscription.status == Subscription.Status.CANCELED
    assert subscription.cancel_at_period_end is False
    assert user.user_type == "FREE"


@pytest.mark.django_db
def test_free_plan_refused_while_paid_subscription_is_live(user, fake_gateway):
    activate_paid_plan(user.pk, "PREMIUM", "sub_1", checkout_session_id="cs_1")

    result = activate_free_plan(user.pk)

    user.refresh_from_db()
    subscription = Subscription.objects.get(user=user)
    assert result.success is False
    assert "Please cancel it before activating the free plan." in result.message
    assert (subscription.plan_id, subscription.status) == ("PREMIUM", Subscription.Status.ACTIVE)
    assert user.user_type == "PREMIUM"
    assert fake_gateway.calls == []


@pytest.mark.django_db
def test_free_plan_refused_while_provider_still_bills_past_due_plan(user):
    _subscribe(user, "BASIC", status=Subscription.Status.PAST_DUE, provider_subscription_id="sub_1")

    result = activate_free_plan(user.pk)

    assert result.success is False
    assert Subscription.objects.get(user=user).plan_id == "BASIC"


@pytest.mark.django_db
def test_free_plan_allowed_after_paid_period_lapses(user):
    _subscribe(user, "BASIC", days=-1)

    result = activate_free_plan(user.pk)

    assert result.success
    assert Subscription.objects.get(user=user).plan_id == "FREE"


@pytest.mark.django_db
def test_cancel_without_subscription_fails(user):
    result = cancel_user_subscription(user.pk)

    assert result.success is False
    assert result.message == "No active subscription found."


@pytest.mark.django_db
def test_resume_undoes_deferred_cancel(user, fake_gateway):
    activate_paid_plan(user.pk, "BASIC", "sub_1", checkout_session_id="cs_1")
    cancel_user_subscription(user.pk)

    result = resume_user_subscription(user.pk)

    subscription = Subscription.objects.get(user=user)
    assert result.success
    assert subscription.cancel_at_period_end is False
    assert subscription.status == Subscription.Status.ACTIVE
    assert fake_gateway.calls[-1] == ("resume", "sub_1")
    descriptions = set(TokenTransaction.objects.filter(user=user, credits=0).values_list("description", flat=True))
    assert descriptions == {"Subscription canceled", "Subscription resumed"}


@pytest.mark.django_db
def test_resume_requires_pending_cancellation(user, fake_gateway):
    activate_paid_plan(user.pk, "BASIC", "sub_1", checkout_session_id="cs_1")

    result = resume_user_subscription(user.pk)

    assert result.success is False
    assert fake_gateway.calls == []


@pytest.mark.django_db
def test_expire_closes_out_canceled_period(user):
    subscription = _subscribe(user, "BASIC", days=-1, cancel_at_period_end=True)
    _force_user_type(user, "BASIC")

    assert expire_lapsed_subscription(subscription.pk) is True

    subscription.refresh_from_db()
    user.refresh_from_db()
    assert subscription.status == Subscription.Status.CANCELED
    assert user.user_type == "FREE"
    assert SubscriptionEvent.objects.filter(user=user, source=SubscriptionEvent.Source.TASK).exists()


@pytest.mark.django_db
def test_expire_marks_unrenewed_local_plan_inactive(user):
    subscription = _subscribe(user, "BASIC", days=-1)

    assert expire_lapsed_subscription(subscription.pk) is True

    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.INACTIVE


@pytest.mark.django_db
def test_expire_waits_for_provider_renewal_within_grace(user):
    subscription = _subscribe(user, "BASIC", days=0, provider_subscription_id="sub_renewing")
    Subscription.objects.filter(pk=subscription.pk).update(current_period_end=timezone.now() - timedelta(hours=1))

    assert expire_lapsed_subscription(subscription.pk) is False

    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.ACTIVE
