"""
Finance App Filters
"""

import django_filters

from .models import Payment


class PaymentFilter(django_filters.FilterSet):
    min_amount = django_filters.NumberFilter(field_name='amount', lookup_expr='gte')
    max_amount = django_filters.NumberFilter(field_name='amount', lookup_expr='lte')

    class Meta:
        model = Payment
        fields = ['parcel', 'match', 'sender', 'carrier', 'status', 'escrow_status']
