"""Signals for order side-effects (shipping record creation)."""

from django.db.models.signals import post_save
from django.dispatch import receiver
from .models import ShopOrder, Shipping


@receiver(post_save, sender=ShopOrder)
def create_order_shipping(sender, instance, created, **kwargs):
    """Create the shipping record for newly created orders.

    It starts as ``nodone`` and is moved by payment settlement.
    """
    if created:
        Shipping.objects.get_or_create(
            order=instance,
            defaults={'shipping_status': Shipping.STATUS_NODONE},
        )
