"""Payments app configuration."""

from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    """Django app config for gateway payments and order settlement."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'payments'
