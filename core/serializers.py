"""
Core App Serializers - User Management
"""

from rest_framework import serializers
from django.contrib.auth import get_user_model
from django.contrib.auth.password_validation import validate_password

from .models import UserRole

User = get_user_model()


class UserSerializer(serializers.ModelSerializer):
    """Serializer for User model (read operations)."""

    success_rate = serializers.ReadOnlyField()

    class Meta:
        model = User
        fields = [
            'id', 'email', 'full_name', 'phone_number', 'roles',
            'kyc_status', 'is_verified',
            'max_parcel_weight', 'default_delivery_fee',
            'average_rating', 'total_reviews',
            'completed_deliveries', 'successful_deliveries', 'success_rate',
            'is_active', 'date_joined'
        ]
        read_only_fields = [
            'id', 'email', 'roles', 'kyc_status', 'is_verified', 'is_active',
            'average_rating', 'total_reviews',
            'completed_deliveries', 'successful_deliveries', 'date_joined'
        ]


class UserCreateSerializer(serializers.ModelSerializer):
    """Serializer for user registration."""

    password = serializers.CharField(
        write_only=True,
        required=True,
        validators=[validate_password]
    )
    roles = serializers.ListField(
        child=serializers.ChoiceField(choices=[UserRole.SENDER, UserRole.CARRIER]),
        required=False,
        allow_empty=False
    )

    class Meta:
        model = User
        fields = ['email', 'password', 'full_name', 'phone_number', 'roles']

    def create(self, validated_data):
        user = User.objects.create_user(
            email=validated_data['email'],
            password=validated_data['password'],
            full_name=validated_data.get('full_name', ''),
            phone_number=validated_data.get('phone_number', ''),
            roles=validated_data.get('roles') or [UserRole.SENDER.value]
        )
        return user


class PublicUserSerializer(serializers.ModelSerializer):
    """Minimal public profile embedded in matches and ratings."""

    class Meta:
        model = User
        fields = ['id', 'full_name', 'average_rating', 'total_reviews', 'is_verified']
        read_only_fields = fields
