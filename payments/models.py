"""Database models for gateway transactions and settlement incidents."""

from django.db import models
from orders.models import ShopOrder


class PaymentTransaction(models.Model):
    """One gateway transaction applied to an order.

    ``transaction_code`` is the gateway-assigned idempotency key; a redelivered
    notification updates its row instead of adding a new one.
    """

    STATUS_SUCCESS = 'success'
    STATUS_FAILED = 'failed'
    STATUS_CHOICES = (
        (STATUS_SUCCESS, 'Success'),
        (STATUS_FAILED, 'Failed'),
    )

    order = models.ForeignKey(ShopOrder, on_delete=models.CASCADE, related_name='payment_transactions')
    transaction_code = models.CharField(max_length=64)
    payment_method = models.CharField(max_length=20, default='vnpay')
    amount = models.PositiveBigIntegerField()
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, db_index=True)
    bank_code = models.CharField(max_length=20, blank=True, default='')
    response_code = models.CharField(max_length=4, blank=True, default='')
    # Raw gateway notification, kept for audit.
    transaction_info = models.JSONField(default=dict, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-id']
        constraints = [
            models.UniqueConstraint(fields=['order', 'transaction_code'], name='uniq_order_transaction_code'),
        ]
        indexes = [
            models.Index(fields=['status', 'created_at']),
        ]

    def __str__(self):
        return f"TX {self.transaction_code} for Order #{self.order_id} ({self.status})"


class SettlementIncident(models.Model):
    """A successful gateway charge that could not be applied to its order.

    Written after the settlement transaction rolled back so that an operator
    can reconcile it by hand (restock, refund, or cancel).
    """

    KIND_INSUFFICIENT_STOCK = 'insufficient_stock'
    KIND_CHOICES = (
        (KIND_INSUFFICIENT_STOCK, 'Insufficient stock'),
    )

    order = models.ForeignKey(ShopOrder, on_delete=models.SET_NULL, null=True, related_name='settlement_incidents')
    transaction_code = models.CharField(max_length=64)
    kind = models.CharField(max_length=32, choices=KIND_CHOICES)
    amount = models.PositiveBigIntegerField(default=0)
    payload = models.JSONField(default=dict, blank=True)
    detail = models.TextField(blank=True, default='')
    resolved = models.BooleanField(default=False)
    # Gateway redeliveries of the same charge while the incident is open.
    attempts = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.get_kind_display()} on Order #{self.order_id} ({self.transaction_code})"
