"""Django admin configuration for shopping cart models."""

from django.contrib import admin
from .models import ShoppingCart, ShoppingCartItem


class ShoppingCartItemInline(admin.TabularInline):
    """Inline display/edit for cart items within a cart."""

    model = ShoppingCartItem
    extra = 0
    readonly_fields = ('subtotal',)


@admin.register(ShoppingCart)
class ShoppingCartAdmin(admin.ModelAdmin):
    """Admin configuration for shopping carts."""

    list_display = ('user', 'total_price', 'created_at')
    search_fields = ('user__username', 'user__email')
    inlines = [ShoppingCartItemInline]
