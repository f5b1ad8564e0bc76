"""Django admin configuration for users."""

from django.contrib import admin
from django.contrib.auth.admin import UserAdmin

from .models import User


@admin.register(User)
class CustomUserAdmin(UserAdmin):
    """User admin with the customer/seller split visible in the list."""

    list_display = ('username', 'email', 'user_type', 'phone_number', 'is_staff')
    list_filter = ('user_type', 'is_staff', 'is_active')
    fieldsets = UserAdmin.fieldsets + (
        ('Shop', {'fields': ('user_type', 'phone_number')}),
    )
