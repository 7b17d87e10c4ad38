"""
Rating Service for PARCELFLYTE
Handles rating submission and the reviewed user's reputation aggregate.

The aggregate is maintained incrementally under a row lock on the
reviewed user (rating_points += score, total_reviews += 1), so each
user has a single writer at a time. recompute() rebuilds it from the
published ratings when the two ever need reconciling.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from django.db import IntegrityError, transaction
from django.db.models import Avg, Count, Sum
from django.utils import timezone

from core.exceptions import (
    BusinessValidationError, Conflict, InvalidState, Unauthorized, get_or_not_found,
)
from core.models import User
from logistics.models import (
    DETAILED_RATING_FIELDS, Parcel, ParcelStatus, Rating, RatingStatus, RatingType,
)

logger = logging.getLogger(__name__)


def _average(points: int, count: int) -> Decimal:
    if not count:
        return Decimal('0.00')
    return (Decimal(points) / Decimal(count)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def _validate_score(value, label: str) -> int:
    if isinstance(value, bool):
        raise BusinessValidationError(f"{label} must be an integer between 1 and 5")
    try:
        score = int(value)
    except (TypeError, ValueError):
        raise BusinessValidationError(f"{label} must be an integer between 1 and 5")
    if score != value and str(score) != str(value):
        raise BusinessValidationError(f"{label} must be an integer between 1 and 5")
    if not 1 <= score <= 5:
        raise BusinessValidationError(f"{label} must be between 1 and 5")
    return score


class RatingService:
    """
    Service for post-delivery ratings.
    """

    @staticmethod
    def _apply_to_aggregate(user_id, points: int, reviews: int) -> User:
        """Add (or remove, with negative deltas) ratings from a user's aggregate."""
        user = User.objects.select_for_update().get(pk=user_id)
        user.rating_points = max(user.rating_points + points, 0)
        user.total_reviews = max(user.total_reviews + reviews, 0)
        user.average_rating = _average(user.rating_points, user.total_reviews)
        user.save(update_fields=['rating_points', 'total_reviews', 'average_rating', 'updated_at'])
        return user

    @classmethod
    @transaction.atomic
    def submit(
        cls,
        parcel_id,
        reviewer_id,
        overall_rating,
        reviewed_id=None,
        rating_type: Optional[str] = None,
        content: str = '',
        title: str = '',
        detailed: Optional[Dict[str, Any]] = None,
        is_public: bool = True,
    ) -> Rating:
        """
        Rate the other party of a delivered parcel.

        The sender rates the carrier and the carrier rates the sender;
        the rating type and reviewed user are derived from the reviewer.

        Raises:
            BusinessValidationError: score outside 1-5, or inconsistent reviewed/type
            NotFound: parcel missing
            InvalidState: parcel not delivered yet
            Unauthorized: reviewer is not a party to the parcel
            Conflict: reviewer already rated this parcel
        """
        score = _validate_score(overall_rating, 'overall_rating')
        detailed = detailed or {}
        unknown = set(detailed) - set(DETAILED_RATING_FIELDS)
        if unknown:
            raise BusinessValidationError(
                f"Unknown rating criteria: {', '.join(sorted(unknown))}"
            )
        details = {
            field: _validate_score(value, field)
            for field, value in detailed.items()
            if value is not None
        }

        parcel = get_or_not_found(Parcel.objects.all(), parcel_id, 'Parcel')
        if parcel.status != ParcelStatus.DELIVERED:
            raise InvalidState("Only delivered parcels can be rated")

        reviewer_key = str(reviewer_id)
        if reviewer_key == str(parcel.sender_id):
            expected_type = RatingType.SENDER_TO_CARRIER
            expected_reviewed = parcel.matched_carrier_id
        elif parcel.matched_carrier_id and reviewer_key == str(parcel.matched_carrier_id):
            expected_type = RatingType.CARRIER_TO_SENDER
            expected_reviewed = parcel.sender_id
        else:
            raise Unauthorized("Only the sender or the carrier can rate this parcel")

        if expected_reviewed is None:
            raise InvalidState("Parcel has no carrier to rate")
        if reviewed_id is not None and str(reviewed_id) != str(expected_reviewed):
            raise BusinessValidationError("Reviewed user is not the other party of this parcel")
        if rating_type is not None and rating_type != expected_type:
            raise BusinessValidationError(f"Rating type must be {expected_type.value}")

        if Rating.objects.filter(
            parcel=parcel, reviewer_id=reviewer_id, rating_type=expected_type
        ).exists():
            raise Conflict("Rating already submitted for this parcel")

        try:
            with transaction.atomic():
                rating = Rating.objects.create(
                    parcel=parcel,
                    reviewer_id=reviewer_id,
                    reviewed_id=expected_reviewed,
                    rating_type=expected_type,
                    overall_rating=score,
                    title=title or '',
                    content=content or '',
                    is_public=is_public,
                    status=RatingStatus.PUBLISHED,
                    published_at=timezone.now(),
                    **details,
                )
        except IntegrityError:
            raise Conflict("Rating already submitted for this parcel")

        cls._apply_to_aggregate(expected_reviewed, points=score, reviews=1)

        logger.info(f"[RATING] Parcel {str(parcel.id)[:8]} → {score}⭐ ({expected_type})")
        return rating

    @classmethod
    @transaction.atomic
    def flag(cls, rating_id) -> Rating:
        """Hide a rating and take it out of the reviewed user's aggregate."""
        rating = get_or_not_found(Rating.objects.select_for_update(), rating_id, 'Rating')
        if rating.is_flagged:
            return rating

        was_counted = rating.counts_towards_aggregate
        rating.is_flagged = True
        rating.status = RatingStatus.FLAGGED
        rating.save(update_fields=['is_flagged', 'status', 'updated_at'])

        if was_counted:
            cls._apply_to_aggregate(rating.reviewed_id, points=-rating.overall_rating, reviews=-1)

        logger.warning(f"[RATING] Rating {str(rating.id)[:8]} flagged")
        return rating

    @staticmethod
    @transaction.atomic
    def recompute(user: User) -> User:
        """Rebuild a user's aggregate from scratch."""
        stats = Rating.objects.filter(
            reviewed=user,
            status=RatingStatus.PUBLISHED,
            is_flagged=False,
        ).aggregate(
            points=Sum('overall_rating'),
            count=Count('id'),
        )

        user = User.objects.select_for_update().get(pk=user.pk)
        user.rating_points = stats['points'] or 0
        user.total_reviews = stats['count'] or 0
        user.average_rating = _average(user.rating_points, user.total_reviews)
        user.save(update_fields=['rating_points', 'total_reviews', 'average_rating', 'updated_at'])
        return user

    @staticmethod
    def summary(user: User) -> dict:
        """
        Get rating summary for a user.

        Returns:
            dict with average, count, per-score breakdown and criteria averages
        """
        ratings = Rating.objects.filter(
            reviewed=user,
            status=RatingStatus.PUBLISHED,
            is_flagged=False,
        )

        breakdown = {score: 0 for score in range(1, 6)}
        for item in ratings.order_by().values('overall_rating').annotate(count=Count('id')):
            breakdown[item['overall_rating']] = item['count']

        criteria = ratings.aggregate(**{field: Avg(field) for field in DETAILED_RATING_FIELDS})

        return {
            'average': float(user.average_rating),
            'count': user.total_reviews,
            'breakdown': breakdown,
            'criteria': {
                field: round(value, 2) if value is not None else None
                for field, value in criteria.items()
            },
        }
