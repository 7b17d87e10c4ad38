"""
LOGISTICS App - Parcels, Travels & Matches for PARCELFLYTE

Handles: Parcels, Travels, Matches, Negotiation history, Ratings
"""

import uuid
from decimal import Decimal
from django.db import models
from django.db.models import Count, F, Sum
from django.conf import settings
from django.utils import timezone

from core.exceptions import BusinessValidationError, InvalidState


def default_currency():
    return settings.DEFAULT_CURRENCY


# ============================================
# PARCELS
# ============================================

class ParcelCategory(models.TextChoices):
    ELECTRONICS = 'electronics', 'Electronics'
    CLOTHING = 'clothing', 'Clothing'
    DOCUMENTS = 'documents', 'Documents'
    BOOKS = 'books', 'Books'
    FOOD = 'food', 'Food'
    COSMETICS = 'cosmetics', 'Cosmetics'
    OTHER = 'other', 'Other'


class SpecialHandling(models.TextChoices):
    FRAGILE = 'fragile', 'Fragile'
    TEMPERATURE_CONTROLLED = 'temperature_controlled', 'Temperature controlled'
    URGENT = 'urgent', 'Urgent'
    SIGNATURE_REQUIRED = 'signature_required', 'Signature required'
    PHOTO_PROOF = 'photo_proof', 'Photo proof'


class DeliveryTime(models.TextChoices):
    ANYTIME = 'anytime', 'Anytime'
    MORNING = 'morning', 'Morning'
    AFTERNOON = 'afternoon', 'Afternoon'
    EVENING = 'evening', 'Evening'


class ParcelStatus(models.TextChoices):
    """Parcel status enumeration."""
    PENDING = 'pending', 'Pending'
    MATCHED = 'matched', 'Matched'
    IN_TRANSIT = 'in_transit', 'In transit'
    DELIVERED = 'delivered', 'Delivered'
    CANCELLED = 'cancelled', 'Cancelled'
    LOST = 'lost', 'Lost'


class ParcelPaymentStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    PAID = 'paid', 'Paid'
    RELEASED = 'released', 'Released'
    REFUNDED = 'refunded', 'Refunded'


# Forward-only status graph. Terminal states have no outgoing edge.
PARCEL_TRANSITIONS = {
    ParcelStatus.PENDING.value: {ParcelStatus.MATCHED.value, ParcelStatus.CANCELLED.value},
    ParcelStatus.MATCHED.value: {ParcelStatus.IN_TRANSIT.value, ParcelStatus.CANCELLED.value},
    ParcelStatus.IN_TRANSIT.value: {
        ParcelStatus.DELIVERED.value, ParcelStatus.CANCELLED.value, ParcelStatus.LOST.value
    },
    ParcelStatus.DELIVERED.value: set(),
    ParcelStatus.CANCELLED.value: set(),
    ParcelStatus.LOST.value: set(),
}


class Parcel(models.Model):
    """
    A sender's shipment request.

    Volume is derived from the dimensions at creation time.
    Status only moves forward (see PARCEL_TRANSITIONS).
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='sent_parcels',
        verbose_name="Sender"
    )

    # Recipient
    recipient_name = models.CharField(max_length=150, verbose_name="Recipient name")
    recipient_phone = models.CharField(max_length=20, verbose_name="Recipient phone")
    recipient_email = models.EmailField(blank=True)
    recipient_street = models.CharField(max_length=255, blank=True)
    recipient_city = models.CharField(max_length=100, verbose_name="Recipient city")
    recipient_state = models.CharField(max_length=100, blank=True)
    recipient_country = models.CharField(max_length=100, verbose_name="Recipient country")
    recipient_postal_code = models.CharField(max_length=20, blank=True)
    recipient_latitude = models.FloatField(null=True, blank=True)
    recipient_longitude = models.FloatField(null=True, blank=True)

    # Contents
    description = models.TextField()
    category = models.CharField(
        max_length=20,
        choices=ParcelCategory.choices,
        default=ParcelCategory.OTHER
    )

    # Physical specifications
    length = models.FloatField(help_text="cm")
    width = models.FloatField(help_text="cm")
    height = models.FloatField(help_text="cm")
    weight = models.FloatField(help_text="kg")
    volume = models.FloatField(null=True, blank=True, help_text="cm³ (computed)")

    # Value and insurance
    declared_value = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default=default_currency)
    insurance_required = models.BooleanField(default=False)
    insurance_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True
    )
    special_handling = models.JSONField(default=list, blank=True)

    # Delivery requirements
    delivery_deadline = models.DateTimeField(null=True, blank=True)
    preferred_delivery_time = models.CharField(
        max_length=20,
        choices=DeliveryTime.choices,
        default=DeliveryTime.ANYTIME
    )

    status = models.CharField(
        max_length=20,
        choices=ParcelStatus.choices,
        default=ParcelStatus.PENDING,
        verbose_name="Status"
    )

    # Matching information
    matched_travel = models.ForeignKey(
        'logistics.Travel',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='matched_parcels'
    )
    matched_carrier = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='carried_parcels'
    )

    # Pricing (frozen on acceptance)
    agreed_delivery_fee = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True
    )
    platform_fee = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal('0.00')
    )
    total_amount = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True
    )
    payment_status = models.CharField(
        max_length=20,
        choices=ParcelPaymentStatus.choices,
        default=ParcelPaymentStatus.PENDING
    )

    matched_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Parcel"
        verbose_name_plural = "Parcels"
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'created_at']),
            models.Index(fields=['sender', 'status']),
        ]

    def __str__(self):
        return f"Parcel {str(self.id)[:8]} - {self.status}"

    def save(self, *args, **kwargs):
        if self._state.adding:
            self.validate_measurements()
            self.volume = self.length * self.width * self.height
        super().save(*args, **kwargs)

    def validate_measurements(self):
        for field in ('length', 'width', 'height', 'weight'):
            value = getattr(self, field)
            if value is None or value <= 0:
                raise BusinessValidationError(f"{field} must be greater than 0")
        if self.declared_value is None or Decimal(self.declared_value) <= 0:
            raise BusinessValidationError("declared_value must be greater than 0")
        invalid = set(self.special_handling or []) - set(SpecialHandling.values)
        if invalid:
            raise BusinessValidationError(
                f"Unknown special handling: {', '.join(sorted(invalid))}"
            )

    @property
    def is_pending(self) -> bool:
        return self.status == ParcelStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return not PARCEL_TRANSITIONS[str(self.status)]

    def can_transition_to(self, new_status) -> bool:
        return str(new_status) in PARCEL_TRANSITIONS[str(self.status)]

    def transition_to(self, new_status, **changes):
        """
        Move the parcel forward in its lifecycle.

        Extra keyword arguments are field values saved with the new status.

        Delivered and lost parcels count towards the carrier's
        completed deliveries; only delivered ones count as successful.
        """
        if new_status not in ParcelStatus.values:
            raise BusinessValidationError(f"Unknown parcel status: {new_status}")
        if not self.can_transition_to(new_status):
            raise InvalidState(
                f"Cannot move parcel from {self.status} to {new_status}"
            )

        now = timezone.now()
        self.status = new_status
        update_fields = ['status', 'updated_at']
        for field, value in changes.items():
            setattr(self, field, value)
            update_fields.append(field)

        if new_status == ParcelStatus.MATCHED:
            self.matched_at = now
            update_fields.append('matched_at')
        elif new_status == ParcelStatus.DELIVERED:
            self.delivered_at = now
            update_fields.append('delivered_at')
        elif new_status == ParcelStatus.CANCELLED:
            self.cancelled_at = now
            update_fields.append('cancelled_at')

        self.save(update_fields=update_fields)

        if self.matched_carrier_id and new_status in (ParcelStatus.DELIVERED, ParcelStatus.LOST):
            from core.models import User
            counters = {'completed_deliveries': F('completed_deliveries') + 1}
            if new_status == ParcelStatus.DELIVERED:
                counters['successful_deliveries'] = F('successful_deliveries') + 1
            User.objects.filter(pk=self.matched_carrier_id).update(**counters)

        return self


# ============================================
# TRAVELS
# ============================================

class TravelMode(models.TextChoices):
    AIR = 'air', 'Air'
    LAND = 'land', 'Land'
    SEA = 'sea', 'Sea'
    MIXED = 'mixed', 'Mixed'


class TravelStatus(models.TextChoices):
    """Travel status enumeration."""
    PLANNED = 'planned', 'Planned'
    CONFIRMED = 'confirmed', 'Confirmed'
    IN_PROGRESS = 'in_progress', 'In progress'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'


# Travels a parcel can still be matched with
OPEN_TRAVEL_STATUSES = (TravelStatus.PLANNED, TravelStatus.CONFIRMED)


class Travel(models.Model):
    """
    A carrier's announced trip with spare capacity.

    The running totals are incremented when a match is accepted.
    Accepted matches are the ledger; reconcile_totals() rebuilds them.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    carrier = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='travels',
        verbose_name="Carrier"
    )

    # Departure
    departure_city = models.CharField(max_length=100)
    departure_country = models.CharField(max_length=100)
    departure_airport = models.CharField(max_length=10, blank=True)
    departure_latitude = models.FloatField(null=True, blank=True)
    departure_longitude = models.FloatField(null=True, blank=True)
    departure_date = models.DateTimeField()

    # Arrival
    arrival_city = models.CharField(max_length=100)
    arrival_country = models.CharField(max_length=100)
    arrival_airport = models.CharField(max_length=10, blank=True)
    arrival_latitude = models.FloatField(null=True, blank=True)
    arrival_longitude = models.FloatField(null=True, blank=True)
    arrival_date = models.DateTimeField()

    travel_mode = models.CharField(
        max_length=10,
        choices=TravelMode.choices,
        default=TravelMode.AIR
    )

    # Capacity
    available_weight = models.FloatField(help_text="kg")
    available_volume = models.FloatField(help_text="cm³")

    # Pricing
    base_delivery_fee = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default=default_currency)
    negotiable = models.BooleanField(default=True)

    status = models.CharField(
        max_length=20,
        choices=TravelStatus.choices,
        default=TravelStatus.PLANNED,
        verbose_name="Status"
    )
    description = models.TextField(blank=True)
    is_verified = models.BooleanField(default=False)

    # Running totals
    total_parcels = models.PositiveIntegerField(default=0)
    total_weight = models.FloatField(default=0)
    total_value = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        default=Decimal('0.00')
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Travel"
        verbose_name_plural = "Travels"
        ordering = ['departure_date']
        indexes = [
            models.Index(fields=['status', 'departure_date']),
            models.Index(fields=['departure_country', 'arrival_country']),
        ]

    def __str__(self):
        return f"{self.departure_city} → {self.arrival_city} ({self.departure_date:%Y-%m-%d})"

    def save(self, *args, **kwargs):
        if self._state.adding:
            self.validate_schedule()
        super().save(*args, **kwargs)

    def validate_schedule(self):
        if self.departure_date >= self.arrival_date:
            raise BusinessValidationError("Departure date must be before arrival date")
        if self.available_weight is None or self.available_weight <= 0:
            raise BusinessValidationError("available_weight must be greater than 0")
        if self.available_volume is None or self.available_volume < 0:
            raise BusinessValidationError("available_volume cannot be negative")
        if self.base_delivery_fee is None or Decimal(self.base_delivery_fee) < 0:
            raise BusinessValidationError("base_delivery_fee cannot be negative")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TRAVEL_STATUSES

    def reconcile_totals(self, commit=True):
        """Rebuild the running totals from accepted matches."""
        stats = Match.objects.filter(
            travel=self,
            status=MatchStatus.ACCEPTED
        ).aggregate(
            parcels=Count('id'),
            weight=Sum('parcel__weight'),
            value=Sum('parcel__declared_value'),
        )
        self.total_parcels = stats['parcels'] or 0
        self.total_weight = stats['weight'] or 0
        self.total_value = stats['value'] or Decimal('0.00')
        if commit:
            self.save(update_fields=['total_parcels', 'total_weight', 'total_value', 'updated_at'])
        return self


# ============================================
# MATCHES
# ============================================

class MatchStatus(models.TextChoices):
    """Match status enumeration."""
    PROPOSED = 'proposed', 'Proposed'
    ACCEPTED = 'accepted', 'Accepted'
    REJECTED = 'rejected', 'Rejected'
    EXPIRED = 'expired', 'Expired'
    CANCELLED = 'cancelled', 'Cancelled'


ACTIVE_MATCH_STATUSES = (MatchStatus.PROPOSED, MatchStatus.ACCEPTED)


class Match(models.Model):
    """
    A proposed pairing of one parcel with one travel.

    Only PROPOSED matches can change state; every other status is final.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    parcel = models.ForeignKey(Parcel, on_delete=models.CASCADE, related_name='matches')
    travel = models.ForeignKey(Travel, on_delete=models.CASCADE, related_name='matches')
    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='sender_matches'
    )
    carrier = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='carrier_matches'
    )

    status = models.CharField(
        max_length=20,
        choices=MatchStatus.choices,
        default=MatchStatus.PROPOSED,
        verbose_name="Status"
    )

    # Scoring snapshot
    match_score = models.FloatField(default=0)
    score_breakdown = models.JSONField(default=dict, blank=True)
    match_details = models.JSONField(default=dict, blank=True)
    suggested_pricing = models.JSONField(default=dict, blank=True)

    # Negotiation
    initial_fee = models.DecimalField(max_digits=10, decimal_places=2)
    proposed_fee = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    final_fee = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    currency = models.CharField(max_length=3, default=default_currency)

    # Agreement terms
    pickup_location = models.CharField(max_length=255, blank=True)
    pickup_date = models.DateTimeField(null=True, blank=True)
    delivery_location = models.CharField(max_length=255, blank=True)
    delivery_date = models.DateTimeField(null=True, blank=True)
    special_instructions = models.TextField(blank=True)
    insurance_required = models.BooleanField(default=False)
    insurance_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)

    # Amounts frozen on acceptance
    platform_fee = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    total_amount = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    # Timeline
    proposed_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField()
    accepted_at = models.DateTimeField(null=True, blank=True)
    rejected_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    expired_at = models.DateTimeField(null=True, blank=True)
    rejection_reason = models.TextField(blank=True)
    cancellation_reason = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Match"
        verbose_name_plural = "Matches"
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['parcel', 'travel'],
                condition=models.Q(status__in=['proposed', 'accepted']),
                name='unique_active_match_per_parcel_travel',
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'expires_at']),
            models.Index(fields=['carrier', 'status']),
            models.Index(fields=['sender', 'status']),
        ]

    def __str__(self):
        return f"Match {str(self.id)[:8]} ({self.match_score:.0f}) - {self.status}"

    @property
    def is_proposed(self) -> bool:
        return self.status == MatchStatus.PROPOSED

    @property
    def is_terminal(self) -> bool:
        return self.status != MatchStatus.PROPOSED

    @property
    def current_fee(self) -> Decimal:
        """Fee currently on the table: final, else last proposal, else initial."""
        if self.final_fee is not None:
            return self.final_fee
        if self.proposed_fee is not None:
            return self.proposed_fee
        return self.initial_fee

    def is_party(self, user_id) -> bool:
        return str(user_id) in (str(self.sender_id), str(self.carrier_id))


class NegotiationEntry(models.Model):
    """Append-only history of fee proposals on a match."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    match = models.ForeignKey(
        Match,
        on_delete=models.CASCADE,
        related_name='negotiation_history'
    )
    proposer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='negotiation_entries'
    )
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    message = models.TextField(blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        verbose_name = "Negotiation entry"
        verbose_name_plural = "Negotiation history"
        ordering = ['created_at']

    def __str__(self):
        return f"{self.proposer} proposed {self.amount} on {self.match_id}"


# ============================================
# RATINGS
# ============================================

class RatingType(models.TextChoices):
    """Who is being rated."""
    SENDER_TO_CARRIER = 'sender_to_carrier', 'Sender → Carrier'
    CARRIER_TO_SENDER = 'carrier_to_sender', 'Carrier → Sender'


class RatingStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    PUBLISHED = 'published', 'Published'
    FLAGGED = 'flagged', 'Flagged'
    REMOVED = 'removed', 'Removed'


DETAILED_RATING_FIELDS = (
    'communication', 'reliability', 'punctuality', 'care', 'professionalism'
)


class Rating(models.Model):
    """
    Post-delivery feedback between sender and carrier.

    Aggregates on the reviewed user are maintained by RatingService.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    parcel = models.ForeignKey(Parcel, on_delete=models.CASCADE, related_name='ratings')
    reviewer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='ratings_given',
        verbose_name="Reviewer"
    )
    reviewed = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='ratings_received',
        verbose_name="Reviewed"
    )
    rating_type = models.CharField(max_length=20, choices=RatingType.choices)

    overall_rating = models.PositiveSmallIntegerField(help_text="1 (bad) to 5 (excellent)")
    communication = models.PositiveSmallIntegerField(null=True, blank=True)
    reliability = models.PositiveSmallIntegerField(null=True, blank=True)
    punctuality = models.PositiveSmallIntegerField(null=True, blank=True)
    care = models.PositiveSmallIntegerField(null=True, blank=True)
    professionalism = models.PositiveSmallIntegerField(null=True, blank=True)

    title = models.CharField(max_length=150, blank=True)
    content = models.TextField(blank=True)
    is_public = models.BooleanField(default=True)

    status = models.CharField(
        max_length=20,
        choices=RatingStatus.choices,
        default=RatingStatus.PUBLISHED
    )
    is_flagged = models.BooleanField(default=False)
    published_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Rating"
        verbose_name_plural = "Ratings"
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['parcel', 'reviewer', 'rating_type'],
                name='unique_rating_per_parcel_reviewer_type',
            ),
        ]
        indexes = [
            models.Index(fields=['reviewed', 'status']),
        ]

    def __str__(self):
        return f"{self.reviewer} → {self.reviewed}: {self.overall_rating}⭐"

    @property
    def counts_towards_aggregate(self) -> bool:
        return self.status == RatingStatus.PUBLISHED and not self.is_flagged
