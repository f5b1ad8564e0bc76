"""Django admin configuration for orders and related models."""

from django.contrib import admin
from .models import ShopOrder, OrderLine, Shipping, ShippingLog
from payments.models import PaymentTransaction


class OrderLineInline(admin.TabularInline):
    """Inline display of order line items."""

    model = OrderLine
    extra = 0
    # Prices of placed orders are immutable.
    readonly_fields = ('product_item', 'price', 'qty')
    can_delete = False


class PaymentTransactionInline(admin.StackedInline):
    """Inline display of the order's gateway transactions."""

    model = PaymentTransaction
    extra = 0
    can_delete = False
    # Transactions only come from the payment gateway.
    max_num = 0

    def get_fields(self, request, obj=None):
        """Show all transaction fields except the primary key."""
        return [f.name for f in self.model._meta.fields if f.name != 'id']

    def get_readonly_fields(self, request, obj=None):
        """Make all transaction fields read-only in admin."""
        return [f.name for f in self.model._meta.fields]


class ShippingLogInline(admin.TabularInline):
    model = ShippingLog
    extra = 0
    can_delete = False
    readonly_fields = ('old_status', 'new_status', 'reason', 'created_at')


@admin.register(ShopOrder)
class ShopOrderAdmin(admin.ModelAdmin):
    """Admin configuration for customer orders."""

    list_display = ('id', 'user', 'final_amount', 'payment_method', 'payment_status', 'paid_at', 'order_date')
    list_filter = ('payment_status', 'payment_method', 'order_date')
    search_fields = ('id', 'user__username')
    readonly_fields = ('payment_status', 'paid_at')
    inlines = [OrderLineInline, PaymentTransactionInline]


@admin.register(Shipping)
class ShippingAdmin(admin.ModelAdmin):
    """Admin configuration for shipping records."""

    list_display = ('order', 'shipping_status', 'shipping_name', 'city', 'updated_at')
    list_filter = ('shipping_status',)
    search_fields = ('order__id', 'shipping_name', 'shipping_phone')
    inlines = [ShippingLogInline]
