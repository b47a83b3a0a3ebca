from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """
    User admin configuration
    """
    list_display = (
        'username', 'email', 'user_type', 'credits', 'credits_used',
        'is_active', 'created_at'
    )
    list_filter = (
        'user_type', 'is_active', 'is_staff', 'is_superuser', 'created_at'
    )
    search_fields = ('username', 'email', 'first_name', 'last_name')
    ordering = ('-created_at',)
    # Wallet fields change only through the billing ledger
    readonly_fields = ('user_type', 'credits', 'credits_used', 'created_at', 'updated_at')

    fieldsets = BaseUserAdmin.fieldsets + (
        ('Subscription', {
            'fields': ('user_type', 'credits', 'credits_used')
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at')
        }),
    )
