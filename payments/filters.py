"""Filters for the staff transaction listing."""

import django_filters

from .models import PaymentTransaction


class PaymentTransactionFilter(django_filters.FilterSet):
    from_date = django_filters.DateFilter(field_name='created_at', lookup_expr='date__gte')
    to_date = django_filters.DateFilter(field_name='created_at', lookup_expr='date__lte')

    class Meta:
        model = PaymentTransaction
        fields = ['status', 'payment_method', 'from_date', 'to_date']
