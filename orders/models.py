"""Database models for orders, order lines and shipping records."""

from django.db import models
from django.conf import settings
from products.models import ProductItem


class ShopOrder(models.Model):
    """Represents a customer's order.

    Amounts are integral minor currency units. Only ``payment_status`` and
    ``paid_at`` change after checkout, and only through payment settlement.
    """

    PAYMENT_UNPAID = 'unpaid'
    PAYMENT_PAID = 'paid'
    PAYMENT_FAILED = 'failed'
    PAYMENT_STATUS_CHOICES = (
        (PAYMENT_UNPAID, 'Unpaid'),
        (PAYMENT_PAID, 'Paid'),
        (PAYMENT_FAILED, 'Failed'),
    )
    PAYMENT_METHOD_CHOICES = (
        ('cod', 'Cash on Delivery'),
        ('vnpay', 'VNPay'),
    )

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='orders')
    order_date = models.DateTimeField(auto_now_add=True)
    total_amount = models.PositiveBigIntegerField(default=0)
    discount_amount = models.PositiveBigIntegerField(default=0)
    final_amount = models.PositiveBigIntegerField()
    coupon_code = models.CharField(max_length=50, null=True, blank=True)
    payment_method = models.CharField(max_length=10, choices=PAYMENT_METHOD_CHOICES, default='vnpay')
    payment_status = models.CharField(
        max_length=10, choices=PAYMENT_STATUS_CHOICES, default=PAYMENT_UNPAID, db_index=True,
    )
    paid_at = models.DateTimeField(null=True, blank=True)
    note = models.TextField(null=True, blank=True)

    class Meta:
        verbose_name = "Shop Order"
        verbose_name_plural = "Shop Orders"
        indexes = [
            models.Index(fields=['user', 'order_date']),
            models.Index(fields=['payment_status', 'order_date']),
        ]

    def __str__(self):
        return f"Order #{self.id} - {self.user.username}"

    @property
    def is_paid(self) -> bool:
        return self.payment_status == self.PAYMENT_PAID


class OrderLine(models.Model):
    """Line item inside an order."""

    product_item = models.ForeignKey(ProductItem, on_delete=models.PROTECT)
    order = models.ForeignKey(ShopOrder, on_delete=models.CASCADE, related_name='lines')
    qty = models.PositiveIntegerField(default=1)
    price = models.PositiveBigIntegerField()

    class Meta:
        verbose_name = "Order Item"
        verbose_name_plural = "Order Items"
        indexes = [
            models.Index(fields=['order', 'product_item']),
        ]

    def __str__(self):
        return f"Line for Order #{self.order_id} - {self.product_item}"


class Shipping(models.Model):
    """Fulfillment record, one per order."""

    STATUS_PENDING = 'pending'
    STATUS_NODONE = 'nodone'
    STATUS_IN_TRANSIT = 'in_transit'
    STATUS_DELIVERED = 'delivered'
    STATUS_RECEIVED = 'received'
    STATUS_RETURN_PROCESSING = 'return_processing'
    STATUS_RETURNED = 'returned'
    STATUS_CANCELLED = 'cancelled'
    STATUS_CHOICES = (
        (STATUS_PENDING, 'Pending dispatch'),
        (STATUS_NODONE, 'Awaiting payment'),
        (STATUS_IN_TRANSIT, 'In transit'),
        (STATUS_DELIVERED, 'Delivered'),
        (STATUS_RECEIVED, 'Received'),
        (STATUS_RETURN_PROCESSING, 'Return processing'),
        (STATUS_RETURNED, 'Returned'),
        (STATUS_CANCELLED, 'Cancelled'),
    )

    # Set by payment settlement.
    DISPATCH_READY = STATUS_PENDING
    NOT_DISPATCHED = STATUS_CANCELLED

    order = models.OneToOneField(ShopOrder, on_delete=models.CASCADE, related_name='shipping')
    shipping_name = models.CharField(max_length=255, blank=True, default='')
    shipping_phone = models.CharField(max_length=20, blank=True, default='')
    shipping_status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_NODONE)
    city = models.CharField(max_length=100, blank=True, default='')
    notes = models.TextField(blank=True, default='')
    shipping_fee = models.PositiveBigIntegerField(default=0)
    received_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Shipping Record"
        verbose_name_plural = "Shipping Records"

    def __str__(self):
        return f"Shipping for Order #{self.order_id} ({self.shipping_status})"

    def is_in_progress(self) -> bool:
        return self.shipping_status in {self.STATUS_PENDING, self.STATUS_IN_TRANSIT}


class ShippingLog(models.Model):
    """Audit trail of shipping status changes."""

    shipping = models.ForeignKey(Shipping, on_delete=models.CASCADE, related_name='logs')
    old_status = models.CharField(max_length=20, blank=True, default='')
    new_status = models.CharField(max_length=20)
    reason = models.CharField(max_length=255, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['id']

    def __str__(self):
        return f"{self.old_status or '-'} -> {self.new_status}"
