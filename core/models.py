"""
CORE App - Custom User Model for PARCELFLYTE

Handles: Users (Senders, Carriers, Admins) and their reputation aggregate
"""

import uuid
from django.contrib.auth.models import AbstractBaseUser, BaseUserManager, PermissionsMixin
from django.db import models
from decimal import Decimal


class UserRole(models.TextChoices):
    """User role enumeration."""
    SENDER = 'sender', 'Sender'
    CARRIER = 'carrier', 'Carrier'
    ADMIN = 'admin', 'Administrator'


class KYCStatus(models.TextChoices):
    """Identity verification status (verification itself is external)."""
    PENDING = 'pending', 'Pending'
    VERIFIED = 'verified', 'Verified'
    REJECTED = 'rejected', 'Rejected'


def default_roles():
    return [UserRole.SENDER.value]


class UserManager(BaseUserManager):
    """Custom user manager for email-based authentication."""

    def create_user(self, email, password=None, **extra_fields):
        if not email:
            raise ValueError('Email is required')

        email = self.normalize_email(email)
        user = self.model(email=email, **extra_fields)
        if password:
            user.set_password(password)
        else:
            user.set_unusable_password()
        user.save(using=self._db)
        return user

    def create_superuser(self, email, password=None, **extra_fields):
        extra_fields.setdefault('is_staff', True)
        extra_fields.setdefault('is_superuser', True)
        extra_fields.setdefault('roles', [UserRole.ADMIN.value])
        extra_fields.setdefault('is_verified', True)

        if extra_fields.get('is_staff') is not True:
            raise ValueError('Superuser must have is_staff=True.')
        if extra_fields.get('is_superuser') is not True:
            raise ValueError('Superuser must have is_superuser=True.')

        return self.create_user(email, password, **extra_fields)


class User(AbstractBaseUser, PermissionsMixin):
    """
    Custom User model using email as primary identifier.

    Key Business Logic:
    - a user can be both sender and carrier (roles is a list)
    - the rating aggregate is maintained incrementally by RatingService:
      rating_points is the running sum of published overall ratings,
      average_rating = rating_points / total_reviews
    - identity is owned by the external provider (auth_provider_id)
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email = models.EmailField(unique=True)
    auth_provider_id = models.CharField(
        max_length=255,
        unique=True,
        null=True,
        blank=True,
        help_text="Identifier issued by the external identity provider"
    )

    # Profile
    full_name = models.CharField(max_length=150, blank=True)
    phone_number = models.CharField(max_length=20, blank=True)
    roles = models.JSONField(default=default_roles)

    # KYC (workflow handled by the identity provider)
    kyc_status = models.CharField(
        max_length=20,
        choices=KYCStatus.choices,
        default=KYCStatus.PENDING
    )
    is_verified = models.BooleanField(default=False)

    # Carrier profile defaults
    max_parcel_weight = models.FloatField(null=True, blank=True, help_text="kg")
    default_delivery_fee = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True
    )

    # Rating & trust aggregate
    average_rating = models.DecimalField(
        max_digits=3,
        decimal_places=2,
        default=Decimal('0.00')
    )
    total_reviews = models.PositiveIntegerField(default=0)
    rating_points = models.PositiveIntegerField(default=0)
    completed_deliveries = models.PositiveIntegerField(default=0)
    successful_deliveries = models.PositiveIntegerField(default=0)

    # Django Auth Fields
    is_active = models.BooleanField(default=True)
    is_staff = models.BooleanField(default=False)
    date_joined = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = UserManager()

    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = []

    class Meta:
        ordering = ['-date_joined']
        indexes = [
            models.Index(fields=['average_rating']),
        ]

    def __str__(self):
        return f"{self.full_name or self.email} ({', '.join(self.roles or [])})"

    def has_role(self, role: str) -> bool:
        return role in (self.roles or [])

    @property
    def is_carrier(self) -> bool:
        return self.has_role(UserRole.CARRIER)

    @property
    def is_sender(self) -> bool:
        return self.has_role(UserRole.SENDER)

    @property
    def is_platform_admin(self) -> bool:
        return self.has_role(UserRole.ADMIN) or self.is_superuser

    @property
    def has_rating_history(self) -> bool:
        return self.total_reviews > 0

    @property
    def success_rate(self) -> float:
        """Share of completed deliveries that ended successfully."""
        return self.successful_deliveries / max(self.completed_deliveries, 1)
