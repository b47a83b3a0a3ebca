"""URL routes for billing endpoints."""
from django.urls import path

from .views import (
    BillingHistoryView,
    CancelSubscriptionView,
    CheckoutSessionView,
    ConsistencyCheckView,
    FreePlanActivationView,
    PaymentMethodListView,
    PaymentVerificationView,
    PlanListView,
    PromoCodeValidationView,
    ReferralCodeValidationView,
    ReferralCodeView,
    ResumeSubscriptionView,
    SubscriptionStatusView,
    UserTokenTransactionViewSet,
)
from .views_webhook import WebhookView

app_name = "billing"

urlpatterns = [
    path("subscription/", SubscriptionStatusView.as_view(), name="subscription-status"),
    path("subscription/free/", FreePlanActivationView.as_view(), name="subscription-free"),
    path("subscription/checkout/", CheckoutSessionView.as_view(), name="subscription-checkout"),
    path("subscription/cancel/", CancelSubscriptionView.as_view(), name="subscription-cancel"),
    path("subscription/resume/", ResumeSubscriptionView.as_view(), name="subscription-resume"),
    path("subscription/verify/", PaymentVerificationView.as_view(), name="subscription-verify"),
    path("subscription/consistency/", ConsistencyCheckView.as_view(), name="subscription-consistency"),
    path(
        "transactions/",
        UserTokenTransactionViewSet.as_view({"get": "list"}),
        name="billing-transactions",
    ),
    path("history/", BillingHistoryView.as_view(), name="billing-history"),
    path("payment-methods/", PaymentMethodListView.as_view(), name="payment-methods"),
    path("plans/", PlanListView.as_view(), name="plans"),
    path("promo/validate/", PromoCodeValidationView.as_view(), name="promo-validate"),
    path("referral/", ReferralCodeView.as_view(), name="referral-code"),
    path("referral/validate/", ReferralCodeValidationView.as_view(), name="referral-validate"),
    path("webhooks/<str:provider>/", WebhookView.as_view(), name="webhook"),
]
