"""Database models for shopping carts."""

from django.db import models
from django.conf import settings
from products.models import ProductItem


class ShoppingCart(models.Model):
    """Shopping cart for an authenticated user."""

    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='cart')
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"Cart of {self.user.username}"

    @property
    def total_price(self):
        return sum(item.subtotal for item in self.items.all())


class ShoppingCartItem(models.Model):
    """Line item inside a shopping cart."""

    cart = models.ForeignKey(ShoppingCart, on_delete=models.CASCADE, related_name='items')
    product_item = models.ForeignKey(ProductItem, on_delete=models.CASCADE)
    qty = models.PositiveIntegerField(default=1)

    def __str__(self):
        return f"{self.qty} x {self.product_item.product.name}"

    @property
    def subtotal(self):
        return self.product_item.price * self.qty
