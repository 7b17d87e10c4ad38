"""
Finance App Serializers - Payments & Escrow
"""

from rest_framework import serializers
from .models import Payment, PaymentMethod, DisputeReason


class PaymentSerializer(serializers.ModelSerializer):
    """Serializer for Payment model (read operations)."""

    match_score = serializers.FloatField(source='match.match_score', read_only=True)

    class Meta:
        model = Payment
        fields = [
            'id', 'payment_id', 'match', 'match_score', 'parcel', 'sender', 'carrier',
            'delivery_fee', 'platform_fee', 'insurance_fee', 'amount', 'currency',
            'payment_method', 'status', 'escrow_status', 'escrow_release_conditions',
            'dispute_reason', 'dispute_description', 'dispute_status',
            'dispute_resolution', 'dispute_resolved_at',
            'refund_amount', 'refund_reason',
            'released_at', 'refunded_at', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class PaymentCreateSerializer(serializers.Serializer):
    """Serializer for creating the escrow payment of an accepted match."""

    match_id = serializers.UUIDField()
    payment_method = serializers.ChoiceField(
        choices=PaymentMethod.choices,
        default=PaymentMethod.STRIPE
    )
    insurance_fee = serializers.DecimalField(
        max_digits=10, decimal_places=2, required=False, min_value=0
    )


class RefundSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default='')
    amount = serializers.DecimalField(max_digits=10, decimal_places=2, required=False)


class DisputeSerializer(serializers.Serializer):
    reason = serializers.ChoiceField(choices=DisputeReason.choices)
    description = serializers.CharField(required=False, allow_blank=True, default='')


class ResolveDisputeSerializer(serializers.Serializer):
    resolution = serializers.CharField()
    release = serializers.BooleanField()
