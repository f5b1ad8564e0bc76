"""Database models for users."""

from django.db import models
from django.contrib.auth.models import AbstractUser


class User(AbstractUser):
    """Custom user model.

    Extends Django's :class:`~django.contrib.auth.models.AbstractUser` with:
    - ``user_type`` to separate customer vs seller flows
    - optional ``phone_number``
    """

    USER_TYPE_CHOICES = (
        ('customer', 'Customer'),
        ('seller', 'Seller'),
    )
    phone_number = models.CharField(max_length=15, null=True, blank=True)
    user_type = models.CharField(max_length=10, choices=USER_TYPE_CHOICES, default='customer')

    def __str__(self):
        return self.username
