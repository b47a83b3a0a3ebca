"""Management command to check (and optionally repair) user_type / subscription drift."""
from __future__ import annotations

from typing import List, Optional

from django.core.management.base import BaseCommand, CommandError

from billing.services.consistency import run_consistency_sweep
from billing.services.reconciliation import (
    InvalidUserIdentifier,
    fix_user_consistency,
    validate_user_consistency,
    validate_user_id,
)


class Command(BaseCommand):
    help = "Check that every user's user_type matches their subscription; --fix repairs mismatches."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--fix",
            action="store_true",
            help="Repair inconsistent users instead of only reporting them.",
        )
        parser.add_argument(
            "--user-id",
            dest="user_id",
            default=None,
            help="Check a single user by id.",
        )
        parser.add_argument(
            "--batch-size",
            type=int,
            default=10,
            help="Number of users validated per batch in bulk mode.",
        )
        parser.add_argument(
            "--batch-delay",
            type=float,
            default=0.5,
            help="Seconds to pause between batches in bulk mode.",
        )

    def handle(self, *args, **options) -> None:
        fix: bool = options.get("fix")
        user_id: Optional[str] = options.get("user_id")

        if user_id:
            self._handle_single(user_id, fix)
            return

        batch_size: int = options.get("batch_size")
        if batch_size < 1:
            raise CommandError("--batch-size must be at least 1.")

        def report_issue(issue_user_id: str, issues: List[str]) -> None:
            self.stdout.write(self.style.WARNING(f"User {issue_user_id}:"))
            for issue in issues:
                self.stdout.write(f"  - {issue}")

        stats = run_consistency_sweep(
            fix=fix,
            batch_size=batch_size,
            batch_delay=max(options.get("batch_delay"), 0.0),
            on_issue=report_issue,
        )

        self.stdout.write(f"Total users checked: {stats.total}")
        self.stdout.write(f"Inconsistent users: {stats.inconsistent}")
        if fix:
            self.stdout.write(f"Fixed: {stats.fixed}")
            self.stdout.write(f"Failed: {stats.failed}")

        if stats.inconsistent == 0:
            self.stdout.write(self.style.SUCCESS("All users are consistent."))
        elif fix and stats.failed == 0:
            self.stdout.write(self.style.SUCCESS("All inconsistencies were repaired."))
        elif not fix:
            self.stdout.write(self.style.WARNING("Run again with --fix to repair these users."))

    def _handle_single(self, user_id: str, fix: bool) -> None:
        try:
            validate_user_id(user_id)
        except InvalidUserIdentifier as exc:
            raise CommandError(str(exc)) from exc

        report = validate_user_consistency(user_id)
        if report.is_consistent:
            self.stdout.write(self.style.SUCCESS(f"User {user_id} is consistent ({report.user_type})."))
            return

        self.stdout.write(self.style.WARNING(f"User {user_id} is inconsistent:"))
        for issue in report.issues:
            self.stdout.write(f"  - {issue}")

        if not fix:
            return

        result = fix_user_consistency(user_id)
        if not result.success:
            raise CommandError(f"Failed to fix user {user_id}: {result.message}")
        self.stdout.write(self.style.SUCCESS(result.message))
