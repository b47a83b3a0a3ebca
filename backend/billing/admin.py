from django.contrib import admin
from django.urls import reverse
from django.utils.html import format_html

from .models import Referral, ReferralUse, Subscription, SubscriptionEvent, TokenTransaction


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = (
        "user",
        "plan_id",
        "status",
        "current_period_end",
        "cancel_at_period_end",
        "updated_at",
    )
    search_fields = (
        "user__username",
        "user__email",
        "provider_customer_id",
        "provider_subscription_id",
    )
    list_filter = ("plan_id", "status", "cancel_at_period_end")
    readonly_fields = ("provider_customer_id", "provider_subscription_id", "created_at", "updated_at")
    ordering = ("-updated_at",)
    list_select_related = ("user",)
    raw_id_fields = ("user",)

    fieldsets = (
        ("Plan", {"fields": ("user", "plan_id", "status", "cancel_at_period_end")}),
        ("Period", {"fields": ("current_period_start", "current_period_end", "trial_end")}),
        ("Provider", {"fields": ("provider_customer_id", "provider_subscription_id")}),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )


@admin.register(TokenTransaction)
class TokenTransactionAdmin(admin.ModelAdmin):
    """Read-only audit trail for credit movements."""

    list_display = (
        "id",
        "user_link",
        "type",
        "credits",
        "created_at",
        "idempotency_key",
    )
    search_fields = (
        "id",
        "user__email",
        "idempotency_key",
        "description",
    )
    list_filter = ("type", "created_at")
    readonly_fields = (
        "id",
        "user",
        "credits",
        "type",
        "description",
        "idempotency_key",
        "created_at",
    )
    ordering = ("-created_at",)
    list_select_related = ("user",)

    @admin.display(description="User")
    def user_link(self, obj):
        url = reverse("admin:accounts_user_change", args=[obj.user_id])
        return format_html('<a href="{}">{}</a>', url, obj.user)

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


class ReferralUseInline(admin.TabularInline):
    model = ReferralUse
    fk_name = "referral"
    extra = 0
    readonly_fields = ("referred", "status", "plan_id", "created_at", "completed_at")
    fields = readonly_fields
    can_delete = False


@admin.register(Referral)
class ReferralAdmin(admin.ModelAdmin):
    list_display = ("referral_code", "user", "created_at")
    search_fields = ("referral_code", "user__email", "user__username")
    raw_id_fields = ("user",)
    inlines = (ReferralUseInline,)


@admin.register(ReferralUse)
class ReferralUseAdmin(admin.ModelAdmin):
    list_display = ("referral", "referrer", "referred", "status", "plan_id", "created_at", "completed_at")
    list_filter = ("status", "plan_id")
    search_fields = ("referral__referral_code", "referrer__email", "referred__email")
    raw_id_fields = ("referral", "referrer", "referred")
    readonly_fields = ("created_at", "completed_at")


@admin.register(SubscriptionEvent)
class SubscriptionEventAdmin(admin.ModelAdmin):
    list_display = (
        "created_at",
        "user",
        "source",
        "reason",
        "previous_status",
        "new_status",
        "previous_plan_id",
        "new_plan_id",
        "event_id",
    )
    list_filter = ("source", "new_status", "created_at")
    search_fields = ("user__email", "event_id", "reason")
    readonly_fields = [field.name for field in SubscriptionEvent._meta.fields]
    ordering = ("-created_at",)
    list_select_related = ("user",)

    def has_add_permission(self, request):
        return False
