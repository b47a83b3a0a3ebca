import uuid

from django.contrib.auth.models import AbstractUser
from django.core.validators import MinValueValidator
from django.db import models


class User(AbstractUser):
    """
    User model

    ``user_type`` mirrors the tier of the user's active subscription and is
    maintained by the billing reconciliation services; ``credits`` is the
    spendable balance backed by the billing token ledger.
    """

    class UserType(models.TextChoices):
        FREE = "FREE", "Free"
        BASIC = "BASIC", "Basic"
        PREMIUM = "PREMIUM", "Premium"
        ULTIMATE = "ULTIMATE", "Ultimate"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email = models.EmailField(unique=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    # Wallet
    user_type = models.CharField(
        max_length=20,
        choices=UserType.choices,
        default=UserType.FREE,
        help_text="Tier derived from the active subscription",
    )
    credits = models.IntegerField(
        default=0,
        validators=[MinValueValidator(0)],
        help_text="Available credit balance",
    )
    credits_used = models.IntegerField(
        default=0,
        validators=[MinValueValidator(0)],
        help_text="Lifetime credits consumed",
    )

    USERNAME_FIELD = 'username'
    REQUIRED_FIELDS = ['email']

    class Meta:
        db_table = 'user'
        verbose_name = 'User'
        verbose_name_plural = 'Users'
        indexes = [
            models.Index(fields=["user_type"], name="user_user_type_idx"),
        ]

    def __str__(self):
        return self.username
