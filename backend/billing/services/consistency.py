"""Batched consistency sweeps over all users."""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from django.conf import settings
from django.contrib.auth import get_user_model

from billing.models import SubscriptionEvent

from .reconciliation import fix_user_consistency, validate_user_consistency

logger = logging.getLogger(__name__)

User = get_user_model()


@dataclass
class ConsistencySweepStats:
    total: int = 0
    inconsistent: int = 0
    fixed: int = 0
    failed: int = 0
    issues: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def iter_user_batches(batch_size: int) -> Iterable[List[str]]:
    queryset = User.objects.order_by("pk").values_list("pk", flat=True)
    batch: List[str] = []
    for pk in queryset.iterator(chunk_size=max(batch_size, 1) * 10):
        batch.append(str(pk))
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


def run_consistency_sweep(
    *,
    fix: bool = False,
    batch_size: Optional[int] = None,
    batch_delay: Optional[float] = None,
    source: str = SubscriptionEvent.Source.CONSISTENCY,
    sleep: Callable[[float], None] = time.sleep,
    on_issue: Optional[Callable[[str, List[str]], None]] = None,
) -> ConsistencySweepStats:
    """Validate every user in batches, optionally repairing the inconsistent ones.

    Pauses ``batch_delay`` seconds between batches to keep the load on the
    database flat during large scans.
    """

    batch_size = max(int(batch_size or getattr(settings, "CONSISTENCY_BATCH_SIZE", 10)), 1)
    if batch_delay is None:
        batch_delay = float(getattr(settings, "CONSISTENCY_BATCH_DELAY_SECONDS", 0.5))

    stats = ConsistencySweepStats()
    first = True
    for batch in iter_user_batches(batch_size):
        if not first and batch_delay > 0:
            sleep(batch_delay)
        first = False

        for user_id in batch:
            stats.total += 1
            report = validate_user_consistency(user_id)
            if report.is_consistent:
                continue
            stats.inconsistent += 1
            stats.issues[user_id] = list(report.issues)
            if on_issue is not None:
                on_issue(user_id, report.issues)
            if not fix:
                continue
            result = fix_user_consistency(user_id, source=source)
            if result.success:
                stats.fixed += 1
            else:
                stats.failed += 1
                logger.warning("Consistency repair failed for user %s: %s", user_id, result.message)

    logger.info(
        "Consistency sweep finished: total=%s inconsistent=%s fixed=%s failed=%s",
        stats.total,
        stats.inconsistent,
        stats.fixed,
        stats.failed,
    )
    return stats
