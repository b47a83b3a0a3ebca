"""Credit ledger helpers providing grant/usage operations with idempotency."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from django.contrib.auth import get_user_model
from django.db import transaction

from billing.models import TokenTransaction
from billing.observability.metrics import CREDITS_GRANTED

User = get_user_model()


class LedgerError(Exception):
    """Base exception type for ledger issues."""


class LedgerUserNotFound(LedgerError):
    """Raised when the target user cannot be located."""


class IdempotencyConflict(LedgerError):
    """Raised when an existing transaction conflicts with the requested mutation."""


class InsufficientCredits(LedgerError):
    """Raised when attempting to debit more credits than available."""


@dataclass(frozen=True)
class LedgerOperationResult:
    user: User
    transaction: TokenTransaction
    created: bool


def grant_credits(
    user_id,
    credits: int,
    transaction_type: str,
    *,
    description: str = "",
    idempotency_key: Optional[str] = None,
) -> LedgerOperationResult:
    """Add ``credits`` to a user's balance and append the matching ledger row.

    When ``idempotency_key`` was already used the existing row is returned
    with ``created=False`` and the balance is left untouched.
    """

    if credits <= 0:
        raise ValueError("Credits must be a positive integer for grants.")
    if transaction_type == TokenTransaction.TransactionType.USAGE:
        raise ValueError("Usage must be recorded through record_usage().")

    with transaction.atomic():
        user = _lock_user(user_id)
        return _apply_transaction(
            user=user,
            credits=credits,
            transaction_type=transaction_type,
            description=description,
            idempotency_key=idempotency_key,
        )


def record_usage(
    user_id,
    credits: int,
    *,
    description: str = "",
    idempotency_key: Optional[str] = None,
) -> LedgerOperationResult:
    """Debit credits for consumption and bump the lifetime usage counter."""

    if credits <= 0:
        raise ValueError("Credits must be a positive integer for usage.")

    with transaction.atomic():
        user = _lock_user(user_id)
        return _apply_transaction(
            user=user,
            credits=-abs(credits),
            transaction_type=TokenTransaction.TransactionType.USAGE,
            description=description,
            idempotency_key=idempotency_key,
        )


def record_subscription_marker(user_id, description: str) -> TokenTransaction:
    """Append a zero-credit SUBSCRIPTION row marking a lifecycle change."""

    return TokenTransaction.objects.create(
        user_id=user_id,
        credits=0,
        type=TokenTransaction.TransactionType.SUBSCRIPTION,
        description=description,
    )


def has_transaction_of_type(user_id, transaction_type: str) -> bool:
    return TokenTransaction.objects.filter(user_id=user_id, type=transaction_type).exists()


def _apply_transaction(
    *,
    user: User,
    credits: int,
    transaction_type: str,
    description: str,
    idempotency_key: Optional[str],
) -> LedgerOperationResult:
    if credits == 0:
        raise ValueError("Credits must be non-zero for ledger operations.")

    existing = _locate_existing_transaction(idempotency_key)
    if existing:
        _validate_existing(existing, user, credits, transaction_type)
        return LedgerOperationResult(user=user, transaction=existing, created=False)

    if transaction_type == TokenTransaction.TransactionType.USAGE and (user.credits + credits) < 0:
        raise InsufficientCredits("Credit balance is insufficient for the requested debit.")

    user.credits = (user.credits or 0) + credits
    update_fields = ["credits", "updated_at"]
    if transaction_type == TokenTransaction.TransactionType.USAGE:
        user.credits_used = (user.credits_used or 0) + abs(credits)
        update_fields.append("credits_used")
    user.save(update_fields=update_fields)

    ledger_row = TokenTransaction.objects.create(
        user=user,
        credits=credits,
        type=transaction_type,
        description=description or "",
        idempotency_key=idempotency_key or None,
    )
    if credits > 0:
        CREDITS_GRANTED.labels(type=transaction_type).inc(credits)

    return LedgerOperationResult(user=user, transaction=ledger_row, created=True)


def _locate_existing_transaction(idempotency_key: Optional[str]) -> Optional[TokenTransaction]:
    if not idempotency_key:
        return None
    return TokenTransaction.objects.filter(idempotency_key=idempotency_key).first()


def _validate_existing(
    existing: TokenTransaction,
    user: User,
    credits: int,
    transaction_type: str,
) -> None:
    if existing.user_id != user.pk:
        raise IdempotencyConflict("Existing transaction is tied to a different user.")
    if existing.type != transaction_type:
        raise IdempotencyConflict("Existing transaction type does not match the request.")
    if existing.credits != credits:
        raise IdempotencyConflict("Existing transaction amount does not match the request.")


def _lock_user(user_id) -> User:
    try:
        return User.objects.select_for_update().get(pk=user_id)
    except User.DoesNotExist as exc:
        raise LedgerUserNotFound("User does not exist.") from exc
