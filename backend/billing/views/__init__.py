"""Billing API views."""
from .catalog import PlanListView, PromoCodeValidationView, ReferralCodeValidationView, ReferralCodeView
from .subscription import (
    CancelSubscriptionView,
    CheckoutSessionView,
    ConsistencyCheckView,
    FreePlanActivationView,
    PaymentVerificationView,
    ResumeSubscriptionView,
    SubscriptionStatusView,
)
from .transactions import BillingHistoryView, PaymentMethodListView, UserTokenTransactionViewSet
