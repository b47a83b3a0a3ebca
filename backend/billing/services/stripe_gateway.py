"""Stripe implementation of the PaymentGateway capability."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import stripe
from django.conf import settings
from django.core.exceptions import ObjectDoesNotExist

from billing.observability.metrics import GATEWAY_FAILURE_COUNT

from .gateway import (
    CheckoutOptions,
    CheckoutResult,
    PaymentConfigurationError,
    PaymentGateway,
    PaymentGatewayError,
    PaymentResourceMissing,
    PaymentStatus,
    PaymentStatusResult,
)
from .plans import apply_discount, get_plan, get_price, to_minor_units

logger = logging.getLogger(__name__)

RETRYABLE_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.APIError, stripe.RateLimitError)


@dataclass
class _CacheEntry:
    customer_id: str
    expires_at: float


class CustomerIdCache:
    """TTL cache of user id -> provider customer id owned by one gateway instance."""

    def __init__(self, ttl_seconds: int = 3600, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, user_id) -> Optional[str]:
        key = str(user_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.customer_id

    def set(self, user_id, customer_id: str) -> None:
        with self._lock:
            self._entries[str(user_id)] = _CacheEntry(customer_id, self._clock() + self.ttl_seconds)

    def invalidate(self, user_id) -> None:
        with self._lock:
            self._entries.pop(str(user_id), None)

    def invalidate_customer(self, customer_id: str) -> int:
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.customer_id == customer_id]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        try:
            return to_dict(recursive=True)
        except TypeError:
            return to_dict()
    to_dict_recursive = getattr(obj, "to_dict_recursive", None)
    if callable(to_dict_recursive):
        return to_dict_recursive()
    return dict(obj)


def _reference_id(value: Any) -> Optional[str]:
    """Return the id of an expandable Stripe field, expanded or not."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


def subscription_period_end(subscription: Dict[str, Any]) -> Optional[int]:
    """Read ``current_period_end`` from the subscription or, on newer API versions, its first item."""
    if not subscription:
        return None
    if subscription.get("current_period_end"):
        return subscription["current_period_end"]
    items = ((subscription.get("items") or {}).get("data")) or []
    for item in items:
        if isinstance(item, dict) and item.get("current_period_end"):
            return item["current_period_end"]
    return None


class StripeGateway(PaymentGateway):
    provider = "stripe"
    supports_account_history = True

    def __init__(self, *, customer_cache: Optional[CustomerIdCache] = None, backoff_seconds: float = 1.0):
        ttl = int(getattr(settings, "BILLING_CUSTOMER_CACHE_TTL_SECONDS", 3600))
        self.customer_cache = customer_cache or CustomerIdCache(ttl_seconds=ttl)
        self.backoff_seconds = backoff_seconds
        self.max_read_retries = int(getattr(settings, "STRIPE_MAX_READ_RETRIES", 3))

    # Configuration -----------------------------------------------------------------

    def _configure(self) -> None:
        secret_key = getattr(settings, "STRIPE_SECRET_KEY", "")
        if not secret_key:
            raise PaymentConfigurationError("STRIPE_SECRET_KEY is not configured.")

        stripe.api_key = secret_key
        api_version = getattr(settings, "STRIPE_API_VERSION", None)
        if api_version:
            stripe.api_version = api_version
        # Retries are decided per call; charge-creating requests must never be replayed blindly.
        stripe.max_network_retries = 0
        timeout = int(getattr(settings, "STRIPE_API_TIMEOUT", 30))
        if getattr(stripe.default_http_client, "_timeout", None) != timeout:
            stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def _read(self, operation: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Run an idempotent read with exponential backoff on transient failures."""

        self._configure()
        attempt = 0
        while True:
            try:
                return func(*args, **kwargs)
            except RETRYABLE_STRIPE_ERRORS as exc:
                if attempt >= self.max_read_retries:
                    raise self._translate(exc, operation) from exc
                attempt += 1
                delay = self.backoff_seconds * (2 ** attempt)
                logger.warning(
                    "Stripe %s failed (%s); retry %s/%s in %.1fs.",
                    operation,
                    type(exc).__name__,
                    attempt,
                    self.max_read_retries,
                    delay,
                )
                time.sleep(delay)
            except stripe.StripeError as exc:
                raise self._translate(exc, operation) from exc

    def _write(self, operation: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        self._configure()
        try:
            return func(*args, **kwargs)
        except stripe.StripeError as exc:
            raise self._translate(exc, operation) from exc

    @staticmethod
    def _translate(exc: Exception, operation: str) -> PaymentGatewayError:
        GATEWAY_FAILURE_COUNT.labels(operation=operation).inc()
        code = getattr(exc, "code", "") or ""
        message = getattr(exc, "user_message", None) or str(exc) or type(exc).__name__
        if code == "resource_missing":
            return PaymentResourceMissing(message, code=code)
        return PaymentGatewayError(
            message,
            retryable=isinstance(exc, RETRYABLE_STRIPE_ERRORS),
            code=code,
        )

    # Customers -----------------------------------------------------------------------

    def ensure_customer(self, user, stored_customer_id: Optional[str] = None) -> str:
        cached = self.customer_cache.get(user.pk)
        if cached:
            return cached

        candidate = stored_customer_id
        if candidate:
            try:
                customer = _as_dict(self._read("retrieve_customer", stripe.Customer.retrieve, candidate))
            except PaymentResourceMissing:
                logger.warning("Stored Stripe customer for user %s no longer exists; creating a new one.", user.pk)
                customer = {}
            if customer and not customer.get("deleted"):
                self.customer_cache.set(user.pk, candidate)
                return candidate

        customer = _as_dict(
            self._write(
                "create_customer",
                stripe.Customer.create,
                email=user.email or None,
                name=user.get_full_name() or user.username,
                metadata={"userId": str(user.pk)},
            )
        )
        customer_id = str(customer.get("id"))
        self.customer_cache.set(user.pk, customer_id)
        return customer_id

    # Mandatory capability group ------------------------------------------------------

    def create_checkout_session(self, user, plan_id: str, duration_months: int, options: CheckoutOptions) -> CheckoutResult:
        plan = get_plan(plan_id)
        price = apply_discount(get_price(plan.id, duration_months), options.promo_discount)
        customer_id = self.ensure_customer(user, _stored_customer_id(user) or None)

        if duration_months == 12:
            recurring = {"interval": "year", "interval_count": 1}
        else:
            recurring = {"interval": "month", "interval_count": duration_months}

        product_data: Dict[str, Any] = {
            "name": f"{plan.name} Plan - {duration_months} month{'s' if duration_months > 1 else ''}",
        }
        if options.promo_discount:
            product_data["description"] = f"Applied discount: {options.promo_discount}% off with code {options.promo_code}"

        session = _as_dict(
            self._write(
                "create_checkout_session",
                stripe.checkout.Session.create,
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": getattr(settings, "STRIPE_CURRENCY", "usd").lower(),
                            "product_data": product_data,
                            "unit_amount": to_minor_units(price),
                            "recurring": recurring,
                        },
                        "quantity": 1,
                    }
                ],
                mode="subscription",
                success_url=options.success_url or _redirect_url("STRIPE_SUCCESS_URL", "dashboard/success"),
                cancel_url=options.cancel_url or _redirect_url("STRIPE_CANCEL_URL", "dashboard/cancelled"),
                metadata=dict(options.metadata),
                subscription_data={"metadata": dict(options.metadata)},
                allow_promotion_codes=not options.promo_discount,
            )
        )

        session_id = session.get("id") or ""
        url = session.get("url") or ""
        if not session_id or not url:
            raise PaymentGatewayError("Stripe did not return a checkout session URL.")
        logger.info("Created Stripe checkout session for user %s (plan=%s, months=%s).", user.pk, plan.id, duration_months)
        return CheckoutResult(session_id=session_id, url=url, customer_id=customer_id)

    def cancel_subscription(self, subscription, immediate: bool = False) -> bool:
        provider_id = subscription.provider_subscription_id
        if not provider_id:
            return False
        if immediate:
            self._write("cancel_subscription", stripe.Subscription.cancel, provider_id)
        else:
            self._write("cancel_subscription", stripe.Subscription.modify, provider_id, cancel_at_period_end=True)
        return True

    def resume_subscription(self, subscription) -> bool:
        provider_id = subscription.provider_subscription_id
        if not provider_id:
            return False
        self._write("resume_subscription", stripe.Subscription.modify, provider_id, cancel_at_period_end=False)
        return True

    def verify_payment_status(self, session_id: str) -> PaymentStatusResult:
        session = _as_dict(
            self._read(
                "retrieve_checkout_session",
                stripe.checkout.Session.retrieve,
                session_id,
                expand=["subscription", "customer"],
            )
        )
        metadata = dict(session.get("metadata") or {})
        status = session.get("status")
        payment_status = session.get("payment_status")

        if status == "complete" and payment_status in ("paid", "no_payment_required"):
            subscription = session.get("subscription")
            amount_total = session.get("amount_total")
            return PaymentStatusResult(
                status=PaymentStatus.SUCCEEDED,
                subscription_id=_reference_id(subscription),
                customer_id=_reference_id(session.get("customer")),
                amount_paid=(Decimal(amount_total) / 100) if amount_total is not None else None,
                period_end=subscription_period_end(subscription) if isinstance(subscription, dict) else None,
                metadata=metadata,
            )
        if status == "open":
            return PaymentStatusResult(status=PaymentStatus.PENDING, metadata=metadata)
        if payment_status == "unpaid":
            return PaymentStatusResult(status=PaymentStatus.FAILED, metadata=metadata)
        return PaymentStatusResult(status=PaymentStatus.CANCELED, metadata=metadata)

    # Optional account group ----------------------------------------------------------

    def get_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        if not customer_id:
            return []
        listing = _as_dict(self._read("list_payment_methods", stripe.PaymentMethod.list, customer=customer_id, type="card"))
        methods = []
        for method in listing.get("data") or []:
            card = method.get("card") or {}
            methods.append(
                {
                    "id": method.get("id"),
                    "type": method.get("type"),
                    "brand": card.get("brand"),
                    "last4": card.get("last4"),
                    "exp_month": card.get("exp_month"),
                    "exp_year": card.get("exp_year"),
                    "is_default": (method.get("metadata") or {}).get("isDefault") == "true",
                }
            )
        return methods

    def get_billing_history(self, customer_id: str) -> List[Dict[str, Any]]:
        if not customer_id:
            return []
        listing = _as_dict(self._read("list_invoices", stripe.Invoice.list, customer=customer_id, limit=24))
        history = []
        for invoice in listing.get("data") or []:
            amount_paid = invoice.get("amount_paid")
            history.append(
                {
                    "id": invoice.get("id"),
                    "number": invoice.get("number"),
                    "status": invoice.get("status"),
                    "amount_paid": str((Decimal(amount_paid) / 100).quantize(Decimal("0.01"))) if amount_paid is not None else None,
                    "currency": (invoice.get("currency") or "").upper(),
                    "created": invoice.get("created"),
                    "hosted_invoice_url": invoice.get("hosted_invoice_url"),
                    "invoice_pdf": invoice.get("invoice_pdf"),
                }
            )
        return history

    def forget_customer(self, customer_id: str) -> None:
        dropped = self.customer_cache.invalidate_customer(customer_id)
        logger.debug("Dropped %d cached customer mappings for %s.", dropped, customer_id)


def _stored_customer_id(user) -> str:
    try:
        return user.subscription.provider_customer_id
    except ObjectDoesNotExist:
        return ""


def _redirect_url(setting_name: str, path: str) -> str:
    configured = getattr(settings, setting_name, "")
    if configured:
        return configured
    base_url = getattr(settings, "BILLING_PUBLIC_BASE_URL", "")
    if not base_url:
        raise PaymentConfigurationError(f"{setting_name} or BILLING_PUBLIC_BASE_URL must be configured.")
    normalized_base = base_url if base_url.endswith("/") else f"{base_url}/"
    return f"{normalized_base}{path.lstrip('/')}?session_id={{CHECKOUT_SESSION_ID}}"
