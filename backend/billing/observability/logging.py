"""Structured logging helper for billing and reconciliation events."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("billing")


def log_billing_event(*, message: str, user_id: Optional[str] = None, event_id: Optional[str] = None,
                      source: Optional[str] = None, extra: Optional[Dict[str, Any]] = None,
                      level: int = logging.INFO) -> None:
    payload: Dict[str, Any] = {"message": message}
    if user_id:
        payload["user_id"] = str(user_id)
    if event_id:
        payload["event_id"] = event_id
    if source:
        payload["source"] = source
    if extra:
        payload.update(extra)
    logger.log(level, payload)
