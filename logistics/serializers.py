"""
Logistics App Serializers - Parcels, Travels, Matches & Ratings
"""

from rest_framework import serializers

from core.serializers import PublicUserSerializer
from finance.models import PaymentMethod
from .models import (
    Parcel, Travel, Match, NegotiationEntry, Rating,
    ParcelStatus, SpecialHandling, TravelMode, RatingType, DETAILED_RATING_FIELDS,
)


# ============================================
# PARCELS
# ============================================

class ParcelSerializer(serializers.ModelSerializer):
    """Full serializer for Parcel model."""

    sender_name = serializers.CharField(source='sender.full_name', read_only=True)
    special_handling = serializers.ListField(
        child=serializers.ChoiceField(choices=SpecialHandling.choices),
        required=False
    )

    class Meta:
        model = Parcel
        fields = [
            'id', 'sender', 'sender_name',
            'recipient_name', 'recipient_phone', 'recipient_email',
            'recipient_street', 'recipient_city', 'recipient_state',
            'recipient_country', 'recipient_postal_code',
            'recipient_latitude', 'recipient_longitude',
            'description', 'category',
            'length', 'width', 'height', 'weight', 'volume',
            'declared_value', 'currency', 'insurance_required', 'insurance_amount',
            'special_handling', 'delivery_deadline', 'preferred_delivery_time',
            'status', 'matched_travel', 'matched_carrier',
            'agreed_delivery_fee', 'platform_fee', 'total_amount', 'payment_status',
            'matched_at', 'delivered_at', 'cancelled_at', 'created_at', 'updated_at'
        ]
        read_only_fields = [
            'id', 'sender', 'volume', 'status', 'matched_travel', 'matched_carrier',
            'agreed_delivery_fee', 'platform_fee', 'total_amount', 'payment_status',
            'matched_at', 'delivered_at', 'cancelled_at', 'created_at', 'updated_at'
        ]

    def validate(self, data):
        for field in ('length', 'width', 'height', 'weight', 'declared_value'):
            value = data.get(field)
            if value is not None and value <= 0:
                raise serializers.ValidationError({field: "Must be greater than 0."})
        return data


class ParcelStatusSerializer(serializers.Serializer):
    """Requested parcel status change."""

    status = serializers.ChoiceField(choices=ParcelStatus.choices)


# ============================================
# TRAVELS
# ============================================

class TravelSerializer(serializers.ModelSerializer):
    """Full serializer for Travel model."""

    carrier_profile = PublicUserSerializer(source='carrier', read_only=True)

    class Meta:
        model = Travel
        fields = [
            'id', 'carrier', 'carrier_profile',
            'departure_city', 'departure_country', 'departure_airport',
            'departure_latitude', 'departure_longitude', 'departure_date',
            'arrival_city', 'arrival_country', 'arrival_airport',
            'arrival_latitude', 'arrival_longitude', 'arrival_date',
            'travel_mode', 'available_weight', 'available_volume',
            'base_delivery_fee', 'currency', 'negotiable',
            'status', 'description', 'is_verified',
            'total_parcels', 'total_weight', 'total_value',
            'created_at', 'updated_at'
        ]
        read_only_fields = [
            'id', 'carrier', 'is_verified',
            'total_parcels', 'total_weight', 'total_value',
            'created_at', 'updated_at'
        ]

    def validate(self, data):
        departure = data.get('departure_date', getattr(self.instance, 'departure_date', None))
        arrival = data.get('arrival_date', getattr(self.instance, 'arrival_date', None))
        if departure and arrival and departure >= arrival:
            raise serializers.ValidationError(
                {'arrival_date': "Arrival date must be after departure date."}
            )
        weight = data.get('available_weight')
        if weight is not None and weight <= 0:
            raise serializers.ValidationError({'available_weight': "Must be greater than 0."})
        volume = data.get('available_volume')
        if volume is not None and volume < 0:
            raise serializers.ValidationError({'available_volume': "Cannot be negative."})
        fee = data.get('base_delivery_fee')
        if fee is not None and fee < 0:
            raise serializers.ValidationError({'base_delivery_fee': "Cannot be negative."})
        return data


# ============================================
# MATCHES
# ============================================

class NegotiationEntrySerializer(serializers.ModelSerializer):

    class Meta:
        model = NegotiationEntry
        fields = ['id', 'proposer', 'amount', 'message', 'created_at']
        read_only_fields = fields


class MatchSerializer(serializers.ModelSerializer):
    """Full serializer for Match model, including the negotiation history."""

    negotiation_history = NegotiationEntrySerializer(many=True, read_only=True)
    sender_profile = PublicUserSerializer(source='sender', read_only=True)
    carrier_profile = PublicUserSerializer(source='carrier', read_only=True)

    class Meta:
        model = Match
        fields = [
            'id', 'parcel', 'travel', 'sender', 'carrier',
            'sender_profile', 'carrier_profile',
            'status', 'match_score', 'score_breakdown', 'match_details',
            'suggested_pricing',
            'initial_fee', 'proposed_fee', 'final_fee', 'currency',
            'negotiation_history',
            'pickup_location', 'pickup_date', 'delivery_location', 'delivery_date',
            'special_instructions', 'insurance_required', 'insurance_amount',
            'platform_fee', 'total_amount',
            'proposed_at', 'expires_at', 'accepted_at', 'rejected_at',
            'cancelled_at', 'expired_at', 'rejection_reason', 'cancellation_reason',
            'created_at', 'updated_at'
        ]
        read_only_fields = fields


class AgreementSerializer(serializers.Serializer):
    """Pickup and delivery terms attached to a match."""

    pickup_location = serializers.CharField(max_length=255, required=False, allow_blank=True)
    pickup_date = serializers.DateTimeField(required=False)
    delivery_location = serializers.CharField(max_length=255, required=False, allow_blank=True)
    delivery_date = serializers.DateTimeField(required=False)
    special_instructions = serializers.CharField(required=False, allow_blank=True)
    insurance_required = serializers.BooleanField(required=False)
    insurance_amount = serializers.DecimalField(
        max_digits=12, decimal_places=2, required=False, min_value=0
    )


class MatchCreateSerializer(serializers.Serializer):
    """Propose a match. Sender and carrier default to the owners."""

    parcel_id = serializers.UUIDField()
    travel_id = serializers.UUIDField()
    sender_id = serializers.UUIDField(required=False)
    carrier_id = serializers.UUIDField(required=False)
    initial_fee = serializers.DecimalField(max_digits=10, decimal_places=2, required=False)
    agreement = AgreementSerializer(required=False)


class NegotiateSerializer(serializers.Serializer):
    fee = serializers.DecimalField(max_digits=10, decimal_places=2)
    message = serializers.CharField(required=False, allow_blank=True, default='')


class AcceptSerializer(serializers.Serializer):
    final_fee = serializers.DecimalField(max_digits=10, decimal_places=2, required=False)
    agreement = AgreementSerializer(required=False)
    payment_method = serializers.ChoiceField(
        choices=PaymentMethod.choices,
        required=False
    )
    insurance_fee = serializers.DecimalField(
        max_digits=10, decimal_places=2, required=False, min_value=0
    )


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default='')


# ============================================
# MATCHING QUERIES
# ============================================

class MatchingQuerySerializer(serializers.Serializer):
    """Query parameters of the matching endpoints."""

    parcel_id = serializers.UUIDField(required=False)

    # Candidate filters
    max_fee = serializers.DecimalField(max_digits=10, decimal_places=2, required=False)
    min_rating = serializers.DecimalField(
        max_digits=3, decimal_places=2, required=False, min_value=0, max_value=5
    )
    travel_mode = serializers.ChoiceField(choices=TravelMode.choices, required=False)
    departure_country = serializers.CharField(required=False)
    arrival_country = serializers.CharField(required=False)

    # Free search (no parcel)
    departure_city = serializers.CharField(required=False)
    arrival_city = serializers.CharField(required=False)
    weight = serializers.FloatField(required=False, min_value=0)
    volume = serializers.FloatField(required=False, min_value=0)
    deadline = serializers.DateTimeField(required=False)

    page = serializers.IntegerField(required=False, default=1, min_value=1)
    limit = serializers.IntegerField(required=False, default=20, min_value=1, max_value=100)

    FILTER_FIELDS = ('max_fee', 'min_rating', 'travel_mode', 'departure_country', 'arrival_country')

    def candidate_filters(self) -> dict:
        data = self.validated_data
        return {key: data[key] for key in self.FILTER_FIELDS if key in data}


class AutoMatchRequestSerializer(serializers.Serializer):
    parcel_id = serializers.UUIDField()
    criteria = MatchingQuerySerializer(required=False)


# ============================================
# RATINGS
# ============================================

class RatingSerializer(serializers.ModelSerializer):
    """Serializer for Rating model (read operations)."""

    reviewer_name = serializers.CharField(source='reviewer.full_name', read_only=True)

    class Meta:
        model = Rating
        fields = [
            'id', 'parcel', 'reviewer', 'reviewer_name', 'reviewed', 'rating_type',
            'overall_rating', *DETAILED_RATING_FIELDS,
            'title', 'content', 'is_public', 'status', 'is_flagged',
            'published_at', 'created_at'
        ]
        read_only_fields = fields


class RatingCreateSerializer(serializers.Serializer):
    """Serializer for rating submission."""

    parcel_id = serializers.UUIDField()
    reviewed_id = serializers.UUIDField(required=False)
    rating_type = serializers.ChoiceField(choices=RatingType.choices, required=False)
    overall_rating = serializers.IntegerField(min_value=1, max_value=5)
    communication = serializers.IntegerField(min_value=1, max_value=5, required=False)
    reliability = serializers.IntegerField(min_value=1, max_value=5, required=False)
    punctuality = serializers.IntegerField(min_value=1, max_value=5, required=False)
    care = serializers.IntegerField(min_value=1, max_value=5, required=False)
    professionalism = serializers.IntegerField(min_value=1, max_value=5, required=False)
    title = serializers.CharField(max_length=150, required=False, allow_blank=True, default='')
    content = serializers.CharField(required=False, allow_blank=True, default='')
    is_public = serializers.BooleanField(required=False, default=True)
