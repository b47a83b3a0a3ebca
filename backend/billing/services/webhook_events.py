"""Normalization of provider webhook payloads into provider-agnostic events."""
from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, Mapping, Optional

from billing.constants import PROVIDER_STRIPE

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    INVOICE_PAID = "INVOICE_PAID"
    INVOICE_FAILED = "INVOICE_FAILED"
    CUSTOMER_UPDATED = "CUSTOMER_UPDATED"


STRIPE_EVENT_TYPES: Dict[str, EventType] = {
    "checkout.session.completed": EventType.PAYMENT_SUCCEEDED,
    "payment_intent.succeeded": EventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventType.PAYMENT_FAILED,
    "customer.subscription.created": EventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventType.SUBSCRIPTION_CANCELED,
    "invoice.paid": EventType.INVOICE_PAID,
    "invoice.payment_succeeded": EventType.INVOICE_PAID,
    "invoice_payment.paid": EventType.INVOICE_PAID,
    "invoice.payment_failed": EventType.INVOICE_FAILED,
    "invoice.payment_action_required": EventType.INVOICE_FAILED,
    "customer.updated": EventType.CUSTOMER_UPDATED,
}

PROVIDER_EVENT_TYPES: Dict[str, Dict[str, EventType]] = {
    PROVIDER_STRIPE: STRIPE_EVENT_TYPES,
}


class WebhookParseError(ValueError):
    """Raised when a payload cannot be turned into an event at all."""


class UnsupportedEventType(Exception):
    """Raised for well-formed events whose type the system does not act on."""

    def __init__(self, event_id: str, provider_type: str):
        super().__init__(f"Unsupported event type '{provider_type}'.")
        self.event_id = event_id
        self.provider_type = provider_type


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: EventType
    timestamp: datetime
    data: Dict[str, Any]
    provider: str = PROVIDER_STRIPE
    provider_type: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def object(self) -> Dict[str, Any]:
        """The event's primary object (``data.object`` for Stripe)."""
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else {}


def _coerce_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=dt_timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def decode_payload(payload: Any) -> Dict[str, Any]:
    """Return the JSON object in ``payload`` or raise ``WebhookParseError``."""

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WebhookParseError("Payload is not valid UTF-8.") from exc
    if isinstance(payload, Mapping):
        return dict(payload)
    if not payload or not str(payload).strip():
        raise WebhookParseError("Payload is empty.")
    try:
        decoded = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise WebhookParseError("Payload is not valid JSON.") from exc
    if not isinstance(decoded, dict):
        raise WebhookParseError("Payload must be a JSON object.")
    return decoded


def build_event(provider: str, decoded: Dict[str, Any]) -> WebhookEvent:
    """Map a decoded payload to a ``WebhookEvent``.

    Raises ``WebhookParseError`` when ``id`` or ``type`` is missing and
    ``UnsupportedEventType`` for types with no internal mapping.
    """

    event_id = decoded.get("id")
    provider_type = decoded.get("type")
    if not event_id or not provider_type:
        raise WebhookParseError("Payload is missing 'id' or 'type'.")

    mapping = PROVIDER_EVENT_TYPES.get(provider)
    if mapping is None:
        raise WebhookParseError(f"Unsupported provider '{provider}'.")
    event_type = mapping.get(str(provider_type))
    if event_type is None:
        raise UnsupportedEventType(str(event_id), str(provider_type))

    timestamp = _coerce_timestamp(decoded.get("created"))
    if timestamp is None:
        logger.warning("Event %s has no usable 'created' time; using receipt time.", event_id)
        timestamp = datetime.now(tz=dt_timezone.utc)

    data = decoded.get("data")
    return WebhookEvent(
        id=str(event_id),
        type=event_type,
        timestamp=timestamp,
        data=data if isinstance(data, dict) else {},
        provider=provider,
        provider_type=str(provider_type),
        raw=decoded,
    )


def parse_webhook_event(provider: str, payload: Any, headers: Optional[Mapping[str, str]] = None) -> Optional[WebhookEvent]:
    """Return the event, or None for malformed payloads.

    ``UnsupportedEventType`` propagates so callers can acknowledge events the
    system does not act on instead of rejecting them.
    """

    try:
        return build_event(provider, decode_payload(payload))
    except WebhookParseError as exc:
        logger.warning("Rejected malformed %s webhook payload: %s", provider, exc)
    return None
