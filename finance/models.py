"""
FINANCE App - Payments & Escrow for PARCELFLYTE

Handles: Payments held in escrow between acceptance and delivery
"""

import uuid
import random
import string
from django.db import models
from django.conf import settings
from django.utils import timezone
from decimal import Decimal


class PaymentMethod(models.TextChoices):
    """Payment method enumeration."""
    STRIPE = 'stripe', 'Stripe'
    PAYPAL = 'paypal', 'PayPal'
    BANK_TRANSFER = 'bank_transfer', 'Bank transfer'
    CRYPTO = 'crypto', 'Crypto'


class PaymentStatus(models.TextChoices):
    """Payment status enumeration."""
    PENDING = 'pending', 'Pending'
    PROCESSING = 'processing', 'Processing'
    COMPLETED = 'completed', 'Completed'
    FAILED = 'failed', 'Failed'
    REFUNDED = 'refunded', 'Refunded'
    DISPUTED = 'disputed', 'Disputed'


class EscrowStatus(models.TextChoices):
    FUNDED = 'funded', 'Funded'
    RELEASED = 'released', 'Released'
    REFUNDED = 'refunded', 'Refunded'
    DISPUTED = 'disputed', 'Disputed'


class EscrowReleaseCondition(models.TextChoices):
    DELIVERY_CONFIRMED = 'delivery_confirmed', 'Delivery confirmed'
    TIME_ELAPSED = 'time_elapsed', 'Time elapsed'
    MANUAL_RELEASE = 'manual_release', 'Manual release'


class DisputeReason(models.TextChoices):
    NON_DELIVERY = 'non_delivery', 'Non delivery'
    DAMAGE = 'damage', 'Damage'
    DELAY = 'delay', 'Delay'
    WRONG_ITEM = 'wrong_item', 'Wrong item'
    OTHER = 'other', 'Other'


class DisputeStatus(models.TextChoices):
    OPEN = 'open', 'Open'
    UNDER_REVIEW = 'under_review', 'Under review'
    RESOLVED = 'resolved', 'Resolved'
    CLOSED = 'closed', 'Closed'


def default_release_conditions():
    return [EscrowReleaseCondition.DELIVERY_CONFIRMED.value]


def generate_payment_id() -> str:
    """PAY-<epoch millis>-<9 random chars>"""
    millis = int(timezone.now().timestamp() * 1000)
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"PAY-{millis}-{suffix}"


class Payment(models.Model):
    """
    Sender's payment for one accepted match, held in escrow.

    Amounts are frozen at creation: amount = delivery_fee + platform_fee + insurance_fee.
    One payment per match (enforced by the OneToOne relation).
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    payment_id = models.CharField(
        max_length=40,
        unique=True,
        default=generate_payment_id,
        editable=False,
        verbose_name="Payment reference"
    )

    match = models.OneToOneField(
        'logistics.Match',
        on_delete=models.PROTECT,
        related_name='payment'
    )
    parcel = models.ForeignKey(
        'logistics.Parcel',
        on_delete=models.PROTECT,
        related_name='payments'
    )
    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='payments_sent',
        verbose_name="Sender"
    )
    carrier = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='payments_received',
        verbose_name="Carrier"
    )

    # Amounts
    delivery_fee = models.DecimalField(max_digits=10, decimal_places=2)
    platform_fee = models.DecimalField(max_digits=10, decimal_places=2)
    insurance_fee = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal('0.00')
    )
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default='USD')

    payment_method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
        default=PaymentMethod.STRIPE
    )
    status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        verbose_name="Status"
    )

    # Escrow
    escrow_status = models.CharField(
        max_length=20,
        choices=EscrowStatus.choices,
        default=EscrowStatus.FUNDED
    )
    escrow_release_conditions = models.JSONField(default=default_release_conditions)

    # Dispute
    dispute_reason = models.CharField(
        max_length=20,
        choices=DisputeReason.choices,
        blank=True
    )
    dispute_description = models.TextField(blank=True)
    dispute_status = models.CharField(
        max_length=20,
        choices=DisputeStatus.choices,
        blank=True
    )
    dispute_resolution = models.TextField(blank=True)
    dispute_resolved_at = models.DateTimeField(null=True, blank=True)

    # Refund
    refund_amount = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    refund_reason = models.TextField(blank=True)

    released_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Payment"
        verbose_name_plural = "Payments"
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['sender', 'created_at']),
            models.Index(fields=['carrier', 'escrow_status']),
        ]

    def __str__(self):
        return f"{self.payment_id} - {self.amount} {self.currency} ({self.escrow_status})"

    @property
    def is_disputed(self) -> bool:
        return self.escrow_status == EscrowStatus.DISPUTED
