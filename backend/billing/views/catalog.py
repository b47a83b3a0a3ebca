"""Plan catalogue, promo code and referral code endpoints."""
from __future__ import annotations

from django.core.exceptions import ObjectDoesNotExist
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.models import ReferralUse
from billing.serializers import CodeSerializer, PlanSerializer
from billing.services.plans import list_plans, validate_promo_code
from billing.services.referrals import get_or_create_referral_code, validate_referral_code


class PlanListView(APIView):
    permission_classes = [AllowAny]

    def get(self, request):
        current_plan_id = None
        if request.user and request.user.is_authenticated:
            try:
                current_plan_id = request.user.subscription.plan_id
            except ObjectDoesNotExist:
                current_plan_id = None
        serializer = PlanSerializer(list_plans(), many=True, context={"current_plan_id": current_plan_id})
        return Response({"plans": serializer.data})


class PromoCodeValidationView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = CodeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        promo = validate_promo_code(serializer.validated_data["code"])
        return Response(
            {
                "valid": promo.valid,
                "code": promo.code,
                "discount_percentage": promo.discount_percentage,
                "message": promo.message,
            },
            status=status.HTTP_200_OK if promo.valid else status.HTTP_400_BAD_REQUEST,
        )


class ReferralCodeView(APIView):
    """Return (allocating on first use) the caller's own referral code."""

    permission_classes = [IsAuthenticated]

    def get(self, request):
        referral = get_or_create_referral_code(request.user)
        return Response(
            {
                "referral_code": referral.referral_code,
                "completed_referrals": referral.uses.filter(status=ReferralUse.Status.COMPLETED).count(),
            }
        )


class ReferralCodeValidationView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = CodeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        validation = validate_referral_code(serializer.validated_data["code"], request.user.pk)
        return Response(
            {"valid": validation.valid, "message": validation.message},
            status=status.HTTP_200_OK if validation.valid else status.HTTP_400_BAD_REQUEST,
        )
