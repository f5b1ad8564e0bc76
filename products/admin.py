"""Django admin configuration for product catalog models."""

from django.contrib import admin

from .models import Product, ProductItem


class ProductItemInline(admin.TabularInline):
    """Inline editor for a product's SKUs (ProductItem)."""

    model = ProductItem
    extra = 1


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    """Admin configuration for products."""

    list_display = ('name', 'is_published')
    search_fields = ('name',)
    inlines = [ProductItemInline]


@admin.register(ProductItem)
class ProductItemAdmin(admin.ModelAdmin):
    """Admin configuration for SKUs; stock is visible for manual reconciliation."""

    list_display = ('sku', 'product', 'size', 'color', 'price', 'qty_in_stock')
    search_fields = ('sku', 'product__name')
    list_filter = ('product',)
