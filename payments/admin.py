"""Django admin configuration for payment models."""

from django.contrib import admin
from django.utils import timezone

from .models import PaymentTransaction, SettlementIncident


@admin.register(PaymentTransaction)
class PaymentTransactionAdmin(admin.ModelAdmin):
    """Read-only view of gateway transactions."""

    list_display = ('id', 'get_order_id', 'transaction_code', 'amount', 'status', 'bank_code', 'paid_at', 'created_at')
    list_filter = ('status', 'payment_method', 'created_at')
    search_fields = ('transaction_code', 'order__id', 'order__user__username')
    readonly_fields = [f.name for f in PaymentTransaction._meta.fields]

    def get_order_id(self, obj):
        """Render order id in a friendly format."""
        return f"Order #{obj.order_id}"
    get_order_id.short_description = 'Order'

    def has_add_permission(self, request):
        return False


@admin.register(SettlementIncident)
class SettlementIncidentAdmin(admin.ModelAdmin):
    """Charges that need manual reconciliation."""

    list_display = ('id', 'order', 'transaction_code', 'kind', 'amount', 'attempts', 'resolved', 'created_at')
    list_filter = ('kind', 'resolved', 'created_at')
    search_fields = ('transaction_code', 'order__id')
    readonly_fields = ('order', 'transaction_code', 'kind', 'amount', 'attempts', 'payload', 'detail', 'created_at', 'updated_at', 'resolved_at')
    actions = ['mark_resolved']

    @admin.action(description='Mark selected incidents as resolved')
    def mark_resolved(self, request, queryset):
        updated = queryset.filter(resolved=False).update(resolved=True, resolved_at=timezone.now())
        self.message_user(request, f"{updated} incident(s) marked as resolved.")
