"""Billing models for subscriptions, the credit ledger, referrals and audit."""
import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from billing.constants import FREE_PLAN_ID, PAID_PLAN_IDS, PLAN_CHOICES


class Subscription(models.Model):
    """A user's single subscription row, the local source of truth for plan state."""

    class Status(models.TextChoices):
        ACTIVE = "ACTIVE", "Active"
        CANCELED = "CANCELED", "Canceled"
        PAST_DUE = "PAST_DUE", "Past due"
        TRIAL = "TRIAL", "Trial"
        PENDING = "PENDING", "Pending"
        INACTIVE = "INACTIVE", "Inactive"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="subscription",
    )
    plan_id = models.CharField(max_length=20, choices=PLAN_CHOICES, default=FREE_PLAN_ID)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.INACTIVE)
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    cancel_at_period_end = models.BooleanField(default=False)
    trial_end = models.DateTimeField(null=True, blank=True)
    provider_customer_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Opaque customer reference at the payment provider",
    )
    provider_subscription_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Opaque subscription reference at the payment provider",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_subscription"
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        ordering = ["-updated_at"]
        indexes = [
            models.Index(fields=["provider_customer_id"], name="billing_sub_customer_idx"),
            models.Index(fields=["provider_subscription_id"], name="billing_sub_provider_idx"),
            models.Index(fields=["status", "current_period_end"], name="billing_sub_status_end_idx"),
        ]

    def __str__(self):
        return f"Subscription<{self.user_id}:{self.plan_id}:{self.status}>"

    @property
    def is_paid_plan(self) -> bool:
        return self.plan_id in PAID_PLAN_IDS

    def is_current(self, now=None) -> bool:
        """True when the subscription is ACTIVE and its period has not elapsed."""
        now = now or timezone.now()
        return (
            self.status == self.Status.ACTIVE
            and self.current_period_end is not None
            and self.current_period_end > now
        )


class TokenTransaction(models.Model):
    """Immutable audit trail for all credit balance changes."""

    class TransactionType(models.TextChoices):
        SUBSCRIPTION = "SUBSCRIPTION", "Subscription"
        TRIAL = "TRIAL", "Trial"
        FREE_SIGNUP = "FREE_SIGNUP", "Free signup"
        REFERRAL = "REFERRAL", "Referral"
        USAGE = "USAGE", "Usage"
        PURCHASE = "PURCHASE", "Purchase"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="token_transactions",
    )
    credits = models.IntegerField(
        help_text="Signed credit amount; positive for grants, negative for usage",
    )
    type = models.CharField(
        max_length=20,
        choices=TransactionType.choices,
    )
    description = models.TextField(blank=True)
    idempotency_key = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Unique key to guarantee a grant is written at most once",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_token_transaction"
        verbose_name = "Token transaction"
        verbose_name_plural = "Token transactions"
        ordering = ["-created_at"]
        constraints = [
            # Zero-credit rows are only used as subscription audit markers
            models.CheckConstraint(
                condition=~Q(credits=0) | Q(type="SUBSCRIPTION"),
                name="token_transaction_non_zero",
            ),
            models.UniqueConstraint(
                fields=["idempotency_key"],
                condition=Q(idempotency_key__isnull=False),
                name="unique_token_transaction_idempotency_key",
            ),
        ]
        indexes = [
            models.Index(fields=["user", "type"], name="billing_token_user_type_idx"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("TokenTransaction records are immutable and cannot be updated.")
        self.full_clean()
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("TokenTransaction records are immutable and cannot be deleted.")

    def __str__(self):
        return f"TokenTransaction<{self.type}:{self.credits} for {self.user_id}>"


class Referral(models.Model):
    """A user's shareable referral code."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="referral",
    )
    referral_code = models.CharField(max_length=32, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_referral"
        verbose_name = "Referral"
        verbose_name_plural = "Referrals"
        ordering = ["-created_at"]

    def __str__(self):
        return f"Referral<{self.referral_code}:{self.user_id}>"


class ReferralUse(models.Model):
    """Application of a referral code by a referred user, settled at most once."""

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        COMPLETED = "COMPLETED", "Completed"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    referral = models.ForeignKey(
        Referral,
        on_delete=models.CASCADE,
        related_name="uses",
    )
    referrer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="referrals_made",
    )
    referred = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="referral_uses",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    plan_id = models.CharField(max_length=20, choices=PLAN_CHOICES, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "billing_referral_use"
        verbose_name = "Referral use"
        verbose_name_plural = "Referral uses"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["referred"],
                condition=Q(status="COMPLETED"),
                name="unique_completed_referral_per_referred_user",
            ),
        ]

    def __str__(self):
        return f"ReferralUse<{self.referrer_id}->{self.referred_id}:{self.status}>"


class SubscriptionEvent(models.Model):
    """Append-only audit log of subscription state transitions."""

    class Source(models.TextChoices):
        API = "API", "API"
        WEBHOOK = "WEBHOOK", "Webhook"
        CONSISTENCY = "CONSISTENCY", "Consistency repair"
        TASK = "TASK", "Scheduled task"

    id = models.BigAutoField(primary_key=True)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="subscription_events",
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="events",
    )
    previous_status = models.CharField(max_length=20, blank=True)
    new_status = models.CharField(max_length=20, blank=True)
    previous_plan_id = models.CharField(max_length=20, blank=True)
    new_plan_id = models.CharField(max_length=20, blank=True)
    reason = models.CharField(max_length=255, blank=True)
    source = models.CharField(max_length=20, choices=Source.choices, default=Source.API)
    event_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Provider event identifier when the change came from a webhook",
    )
    metadata = models.JSONField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_subscription_event"
        verbose_name = "Subscription event"
        verbose_name_plural = "Subscription events"
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["user", "created_at"], name="billing_sub_event_user_idx"),
            models.Index(fields=["event_id"], name="billing_sub_event_event_idx"),
        ]

    def __str__(self):
        return f"SubscriptionEvent<{self.user_id}:{self.previous_status}->{self.new_status}>"
