from datetime import timedelta
from io import StringIO

import pytest
from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.db import DatabaseError
from django.utils import timezone

from billing import tasks
from billing.models import Subscription, TokenTransaction
from billing.services.consistency import iter_user_batches
from billing.services.idempotency import InMemoryIdempotencyGuard
from billing.tasks_webhooks import WebhookProcessingError


def _drift(user, user_type="BASIC"):
    get_user_model().objects.filter(pk=user.pk).update(user_type=user_type)


def _run(*args):
    out = StringIO()
    call_command("check_subscription_consistency", *args, stdout=out)
    return out.getvalue()


@pytest.mark.django_db
def test_command_reports_without_fixing(user):
    _drift(user)

    output = _run("--batch-delay", "0")

    user.refresh_from_db()
    assert "Inconsistent users: 1" in output
    assert 'User has no subscription but userType is "BASIC" instead of "FREE"' in output
    assert "--fix" in output
    assert user.user_type == "BASIC"


@pytest.mark.django_db
def test_command_fixes_in_batches(make_user):
    drifted = [make_user() for _ in range(3)]
    make_user()
    for learner in drifted:
        _drift(learner, "PREMIUM")

    output = _run("--fix", "--batch-size", "2", "--batch-delay", "0")

    assert "Total users checked: 4" in output
    assert "Fixed: 3" in output
    assert "Failed: 0" in output
    assert set(get_user_model().objects.values_list("user_type", flat=True)) == {"FREE"}


@pytest.mark.django_db
def test_command_single_user(user):
    Subscription.objects.create(
        user=user,
        plan_id="ULTIMATE",
        status=Subscription.Status.ACTIVE,
        current_period_end=timezone.now() + timedelta(days=10),
    )

    report = _run("--user-id", str(user.pk))
    fixed = _run("--user-id", str(user.pk), "--fix")

    user.refresh_from_db()
    assert "is inconsistent" in report
    assert 'does not match active subscription plan "ULTIMATE"' in report
    assert "is inconsistent" in fixed
    assert user.user_type == "ULTIMATE"
    assert "is consistent (ULTIMATE)" in _run("--user-id", str(user.pk))


@pytest.mark.django_db
def test_command_rejects_invalid_user_id():
    with pytest.raises(CommandError):
        _run("--user-id", "not-a-uuid")


@pytest.mark.django_db
def test_command_rejects_non_positive_batch_size():
    with pytest.raises(CommandError):
        _run("--batch-size", "0")


@pytest.mark.django_db
def test_sweep_task_returns_stats(make_user):
    _drift(make_user())
    make_user()

    stats = tasks.sweep_subscription_consistency(fix=True, batch_size=5)

    assert stats == {"total": 2, "inconsistent": 1, "fixed": 1, "failed": 0}


@pytest.mark.django_db
def test_fix_user_consistency_task(user):
    _drift(user, "PREMIUM")

    result = tasks.fix_user_consistency_task(str(user.pk))

    user.refresh_from_db()
    assert result["success"] is True
    assert user.user_type == "FREE"


@pytest.mark.django_db
def test_expire_lapsed_subscriptions_task(make_user):
    now = timezone.now()
    lapsed = make_user(user_type="BASIC")
    Subscription.objects.create(
        user=lapsed,
        plan_id="BASIC",
        status=Subscription.Status.ACTIVE,
        current_period_end=now - timedelta(days=1),
    )
    current = make_user(user_type="PREMIUM")
    Subscription.objects.create(
        user=current,
        plan_id="PREMIUM",
        status=Subscription.Status.ACTIVE,
        current_period_end=now + timedelta(days=1),
    )

    stats = tasks.expire_lapsed_subscriptions()

    lapsed.refresh_from_db()
    current.refresh_from_db()
    assert stats == {"processed": 1, "expired": 1, "failed": 0}
    assert lapsed.user_type == "FREE"
    assert lapsed.subscription.status == Subscription.Status.INACTIVE
    assert current.user_type == "PREMIUM"


@pytest.mark.django_db
def test_expire_task_counts_failures(make_user, monkeypatch):
    user = make_user(user_type="BASIC")
    Subscription.objects.create(
        user=user,
        plan_id="BASIC",
        status=Subscription.Status.ACTIVE,
        current_period_end=timezone.now() - timedelta(days=1),
    )

    def _boom(subscription_id, now=None):
        raise DatabaseError("lock timeout")

    monkeypatch.setattr(tasks, "expire_lapsed_subscription", _boom)

    assert tasks.expire_lapsed_subscriptions() == {"processed": 1, "expired": 0, "failed": 1}


def test_cleanup_idempotency_guard_task(monkeypatch):
    clock = {"now": 0.0}
    guard = InMemoryIdempotencyGuard(ttl_seconds=10, clock=lambda: clock["now"])
    guard.mark_processing("evt_1")
    guard.mark_completed("evt_1")
    monkeypatch.setattr(tasks, "get_idempotency_guard", lambda: guard)

    clock["now"] = 11.0

    assert tasks.cleanup_idempotency_guard() == 1
    assert guard.is_duplicate("evt_1") is False


@pytest.mark.django_db
def test_replay_task_applies_event_once(user):
    payload = {
        "id": "evt_replay_1",
        "type": "checkout.session.completed",
        "created": int(timezone.now().timestamp()),
        "data": {
            "object": {
                "id": "cs_replay",
                "mode": "subscription",
                "subscription": "sub_replay",
                "customer": "cus_replay",
                "metadata": {"userId": str(user.pk), "planName": "BASIC", "duration": "1"},
            }
        },
    }

    first = tasks.process_webhook_payload_async("stripe", payload)
    second = tasks.process_webhook_payload_async("stripe", payload)

    user.refresh_from_db()
    assert first["success"] is True
    assert second["message"] == "Duplicate event ignored"
    assert user.user_type == "BASIC"
    assert TokenTransaction.objects.filter(user=user).count() == 1


def test_replay_task_ignores_unsupported_events():
    result = tasks.process_webhook_payload_async(
        "stripe",
        {"id": "evt_x", "type": "charge.refunded", "created": 1, "data": {"object": {}}},
    )

    assert result == {"status": "ignored", "event_id": "evt_x"}


@pytest.mark.django_db
def test_replay_task_raises_for_retry_on_transient_failure(user, monkeypatch):
    def _unavailable(*args, **kwargs):
        raise DatabaseError("connection reset")

    monkeypatch.setattr("billing.tasks_webhooks.activate_paid_plan", _unavailable)
    payload = {
        "id": "evt_retry_1",
        "type": "checkout.session.completed",
        "created": 1,
        "data": {"object": {"id": "cs_1", "metadata": {"userId": str(user.pk), "planName": "BASIC"}}},
    }

    with pytest.raises(WebhookProcessingError):
        tasks.process_webhook_payload_async("stripe", payload)


def test_replay_task_drops_malformed_payloads():
    result = tasks.process_webhook_payload_async("stripe", {"type": "invoice.paid"})

    assert result == {"status": "failed", "detail": "malformed_payload"}


@pytest.mark.django_db
def test_user_batches_cover_every_user_once(make_user):
    users = [make_user() for _ in range(5)]

    batches = list(iter_user_batches(2))

    assert [len(batch) for batch in batches] == [2, 2, 1]
    assert sorted(pk for batch in batches for pk in batch) == sorted(str(u.pk) for u in users)
