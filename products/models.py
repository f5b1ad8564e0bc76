"""Database models for the product catalog and its stock-bearing variants."""

from django.db import models


class Product(models.Model):
    """Top-level product entity.

    A Product can have multiple SKUs via :class:`ProductItem`.
    """

    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    is_published = models.BooleanField(default=True)

    def __str__(self):
        return self.name

    class Meta:
        ordering = ['id']


class ProductItem(models.Model):
    """Specific purchasable SKU (variant) for a product.

    ``qty_in_stock`` is only decremented by payment settlement, under a row lock.
    """

    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name='items')
    sku = models.CharField(max_length=255, unique=True)
    size = models.CharField(max_length=20, blank=True, default='')
    color = models.CharField(max_length=40, blank=True, default='')
    price = models.PositiveBigIntegerField(default=0)
    qty_in_stock = models.IntegerField(default=0)

    def __str__(self):
        return f"{self.product.name} - SKU: {self.sku}"
