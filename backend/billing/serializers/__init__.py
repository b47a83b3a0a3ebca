"""DRF serializers for the subscription dashboard API."""
from __future__ import annotations

from django.utils.translation import gettext_lazy as _
from rest_framework import serializers

from billing.constants import SUPPORTED_DURATIONS
from billing.models import TokenTransaction
from billing.services.plans import Plan, is_paid_plan


class TokenTransactionSerializer(serializers.ModelSerializer):
    """Read-only view of a ledger row."""

    class Meta:
        model = TokenTransaction
        fields = (
            "id",
            "credits",
            "type",
            "description",
            "created_at",
        )
        read_only_fields = fields


class PlanSerializer(serializers.Serializer):
    id = serializers.CharField()
    name = serializers.CharField()
    tokens = serializers.IntegerField()
    is_paid = serializers.BooleanField()
    options = serializers.SerializerMethodField()
    is_current = serializers.SerializerMethodField()

    def get_options(self, obj: Plan):
        return [
            {"duration_months": option.duration_months, "price": str(option.price)}
            for option in obj.options
        ]

    def get_is_current(self, obj: Plan) -> bool:
        return self.context.get("current_plan_id") == obj.id


class CheckoutRequestSerializer(serializers.Serializer):
    plan_id = serializers.CharField(max_length=32)
    duration = serializers.ChoiceField(choices=SUPPORTED_DURATIONS, default=1)
    referral_code = serializers.CharField(max_length=32, required=False, allow_blank=True)
    promo_code = serializers.CharField(max_length=32, required=False, allow_blank=True)

    def validate_plan_id(self, value: str) -> str:
        normalized = value.strip().upper()
        if not is_paid_plan(normalized):
            raise serializers.ValidationError(_("Unknown or non-paid plan."))
        return normalized


class CancelSubscriptionSerializer(serializers.Serializer):
    immediate = serializers.BooleanField(default=False)


class CodeSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=32, trim_whitespace=True)

    def validate_code(self, value: str) -> str:
        return value.upper()
