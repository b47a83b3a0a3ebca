"""Payment gateway capability interface used by the reconciliation core."""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.utils.module_loading import import_string

from billing.constants import PROVIDER_STRIPE


class PaymentGatewayError(RuntimeError):
    """Raised when the payment provider rejects or fails an operation."""

    def __init__(self, message: str, *, retryable: bool = False, code: str = ""):
        super().__init__(message)
        self.retryable = retryable
        self.code = code


class PaymentResourceMissing(PaymentGatewayError):
    """Raised when the provider no longer knows the referenced object."""


class PaymentConfigurationError(PaymentGatewayError):
    """Raised when mandatory provider configuration is missing."""


class PaymentStatus:
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass(frozen=True)
class CheckoutOptions:
    referral_code: Optional[str] = None
    promo_code: Optional[str] = None
    promo_discount: int = 0
    customer_email: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutResult:
    session_id: str
    url: str
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentStatusResult:
    status: str
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    amount_paid: Optional[Decimal] = None
    period_end: Optional[Any] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentGateway(abc.ABC):
    """Closed capability interface every payment provider implements.

    The checkout, cancel, resume and verification group is mandatory. The
    read-only account group (payment methods, billing history) is optional:
    providers that lack it keep the empty defaults and report
    ``supports_account_history = False``.
    """

    provider: str = ""
    supports_account_history: bool = False

    @abc.abstractmethod
    def create_checkout_session(self, user, plan_id: str, duration_months: int, options: CheckoutOptions) -> CheckoutResult:
        ...

    @abc.abstractmethod
    def cancel_subscription(self, subscription, immediate: bool = False) -> bool:
        ...

    @abc.abstractmethod
    def resume_subscription(self, subscription) -> bool:
        ...

    @abc.abstractmethod
    def verify_payment_status(self, session_id: str) -> PaymentStatusResult:
        ...

    def get_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        return []

    def get_billing_history(self, customer_id: str) -> List[Dict[str, Any]]:
        return []

    def forget_customer(self, customer_id: str) -> None:
        """Drop any cached state for ``customer_id``."""
        return None


GATEWAY_CLASSES: Dict[str, str] = {
    PROVIDER_STRIPE: "billing.services.stripe_gateway.StripeGateway",
}

_gateway_instances: Dict[str, PaymentGateway] = {}


def get_payment_gateway(provider: Optional[str] = None) -> PaymentGateway:
    """Return the process-wide gateway for ``provider`` (defaults to settings)."""

    key = (provider or getattr(settings, "BILLING_PAYMENT_PROVIDER", PROVIDER_STRIPE)).lower()
    gateway = _gateway_instances.get(key)
    if gateway is not None:
        return gateway
    dotted_path = GATEWAY_CLASSES.get(key)
    if dotted_path is None:
        raise PaymentConfigurationError(f"Unsupported payment provider '{key}'.")
    gateway = import_string(dotted_path)()
    _gateway_instances[key] = gateway
    return gateway


def reset_payment_gateways() -> None:
    _gateway_instances.clear()
