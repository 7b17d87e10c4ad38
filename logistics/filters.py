"""
Logistics App Filters - list filtering for the REST endpoints
"""

import django_filters

from .models import Parcel, Travel, Match, Rating


class ParcelFilter(django_filters.FilterSet):
    recipient_city = django_filters.CharFilter(lookup_expr='iexact')
    recipient_country = django_filters.CharFilter(lookup_expr='iexact')
    deadline_before = django_filters.IsoDateTimeFilter(field_name='delivery_deadline', lookup_expr='lte')

    class Meta:
        model = Parcel
        fields = ['status', 'category', 'payment_status', 'matched_carrier']


class TravelFilter(django_filters.FilterSet):
    departure_city = django_filters.CharFilter(lookup_expr='iexact')
    arrival_city = django_filters.CharFilter(lookup_expr='iexact')
    departure_country = django_filters.CharFilter(lookup_expr='iexact')
    arrival_country = django_filters.CharFilter(lookup_expr='iexact')
    departs_after = django_filters.IsoDateTimeFilter(field_name='departure_date', lookup_expr='gte')
    departs_before = django_filters.IsoDateTimeFilter(field_name='departure_date', lookup_expr='lte')
    min_weight = django_filters.NumberFilter(field_name='available_weight', lookup_expr='gte')
    max_fee = django_filters.NumberFilter(field_name='base_delivery_fee', lookup_expr='lte')

    class Meta:
        model = Travel
        fields = ['status', 'travel_mode', 'carrier']


class MatchFilter(django_filters.FilterSet):
    min_score = django_filters.NumberFilter(field_name='match_score', lookup_expr='gte')

    class Meta:
        model = Match
        fields = ['status', 'parcel', 'travel', 'sender', 'carrier']


class RatingFilter(django_filters.FilterSet):

    class Meta:
        model = Rating
        fields = ['parcel', 'reviewer', 'reviewed', 'rating_type']
