import pytest
from django.core.exceptions import ValidationError

from billing.models import TokenTransaction
from billing.services.token_ledger import (
    IdempotencyConflict,
    InsufficientCredits,
    LedgerUserNotFound,
    grant_credits,
    record_subscription_marker,
    record_usage,
)


@pytest.mark.django_db
def test_grant_credits_appends_row_and_updates_balance(user):
    result = grant_credits(
        user.pk,
        60,
        TokenTransaction.TransactionType.SUBSCRIPTION,
        description="Basic plan",
        idempotency_key="plan-activation:cs_1",
    )

    user.refresh_from_db()
    assert result.created is True
    assert user.credits == 60
    assert result.transaction.credits == 60
    assert TokenTransaction.objects.filter(user=user).count() == 1


@pytest.mark.django_db
def test_grant_credits_is_idempotent_on_key(user):
    grant_credits(user.pk, 5, TokenTransaction.TransactionType.FREE_SIGNUP, idempotency_key="free-signup:x")
    second = grant_credits(user.pk, 5, TokenTransaction.TransactionType.FREE_SIGNUP, idempotency_key="free-signup:x")

    user.refresh_from_db()
    assert second.created is False
    assert user.credits == 5
    assert TokenTransaction.objects.filter(user=user).count() == 1


@pytest.mark.django_db
def test_grant_credits_rejects_conflicting_reuse_of_key(user):
    grant_credits(user.pk, 5, TokenTransaction.TransactionType.REFERRAL, idempotency_key="referral:1:referred")

    with pytest.raises(IdempotencyConflict):
        grant_credits(user.pk, 10, TokenTransaction.TransactionType.REFERRAL, idempotency_key="referral:1:referred")


@pytest.mark.django_db
def test_grant_credits_for_missing_user_raises():
    with pytest.raises(LedgerUserNotFound):
        grant_credits("00000000-0000-0000-0000-000000000000", 5, TokenTransaction.TransactionType.PURCHASE)


@pytest.mark.django_db
def test_record_usage_debits_and_tracks_consumption(user):
    grant_credits(user.pk, 10, TokenTransaction.TransactionType.PURCHASE)

    record_usage(user.pk, 3, description="Quiz generation")

    user.refresh_from_db()
    assert user.credits == 7
    assert user.credits_used == 3
    assert TokenTransaction.objects.get(type=TokenTransaction.TransactionType.USAGE).credits == -3


@pytest.mark.django_db
def test_record_usage_refuses_overdraft(user):
    with pytest.raises(InsufficientCredits):
        record_usage(user.pk, 1)

    user.refresh_from_db()
    assert user.credits == 0


@pytest.mark.django_db
def test_ledger_rows_are_immutable(user):
    row = grant_credits(user.pk, 5, TokenTransaction.TransactionType.PURCHASE).transaction

    row.description = "edited"
    with pytest.raises(ValidationError):
        row.save()
    with pytest.raises(ValidationError):
        row.delete()


@pytest.mark.django_db
def test_zero_credit_rows_only_allowed_as_subscription_markers(user):
    marker = record_subscription_marker(user.pk, "Subscription canceled")
    assert marker.credits == 0

    with pytest.raises(ValidationError):
        TokenTransaction.objects.create(user=user, credits=0, type=TokenTransaction.TransactionType.PURCHASE)
