"""Subscription lifecycle endpoints for the authenticated user."""
from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.serializers import CancelSubscriptionSerializer, CheckoutRequestSerializer
from billing.services.checkout import create_checkout_session, verify_payment_status
from billing.services.reconciliation import (
    SubscriptionResult,
    activate_free_plan,
    cancel_user_subscription,
    resume_user_subscription,
    validate_user_consistency,
)
from billing.services.subscription_status import get_user_subscription_data

logger = logging.getLogger(__name__)


def _result_response(result: SubscriptionResult, *, failure_status: int = status.HTTP_400_BAD_REQUEST) -> Response:
    payload = {
        "success": result.success,
        "message": result.message,
        "already_subscribed": result.already_subscribed,
        "credits_granted": result.credits_granted,
    }
    return Response(payload, status=status.HTTP_200_OK if result.success else failure_status)


class SubscriptionStatusView(APIView):
    """Return the dashboard snapshot of the user's plan and credits."""

    permission_classes = [IsAuthenticated]

    def get(self, request):
        snapshot = get_user_subscription_data(request.user.pk)
        if snapshot is None:
            return Response({"detail": "User not found."}, status=status.HTTP_404_NOT_FOUND)
        return Response(snapshot.to_dict())


class FreePlanActivationView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        return _result_response(activate_free_plan(request.user.pk))


class CheckoutSessionView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = CheckoutRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = create_checkout_session(
            request.user.pk,
            data["plan_id"],
            data["duration"],
            referral_code=data.get("referral_code") or None,
            promo_code=data.get("promo_code") or None,
        )
        if not result.success:
            return Response({"detail": result.message}, status=status.HTTP_400_BAD_REQUEST)

        return Response(
            {
                "checkout_session_id": result.session_id,
                "checkout_url": result.url,
                "referral_applied": result.referral_applied,
                "promo_discount": result.promo_discount,
                "message": result.message,
            },
            status=status.HTTP_201_CREATED,
        )


class CancelSubscriptionView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = CancelSubscriptionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = cancel_user_subscription(request.user.pk, immediate=serializer.validated_data["immediate"])
        return _result_response(result)


class ResumeSubscriptionView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        return _result_response(resume_user_subscription(request.user.pk))


class PaymentVerificationView(APIView):
    """Polled by the checkout success page until the payment settles."""

    permission_classes = [IsAuthenticated]

    def get(self, request):
        session_id = request.query_params.get("session_id", "")
        result = verify_payment_status(session_id, request.user.pk)
        payload = {
            "success": result.success,
            "status": result.status,
            "message": result.message,
            "plan_id": result.plan_id,
            "activated": result.activated,
        }
        return Response(payload, status=status.HTTP_200_OK if result.success else status.HTTP_400_BAD_REQUEST)


class ConsistencyCheckView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        report = validate_user_consistency(request.user.pk)
        return Response(
            {
                "is_consistent": report.is_consistent,
                "issues": report.issues,
                "user_type": report.user_type,
                "expected_user_type": report.expected_user_type,
            }
        )
