"""
PARCELFLYTE Rating Tests
========================

Tests for:
1. Rating submission rules (delivered parcel, parties, 1-5 range, duplicates)
2. Incremental reputation aggregate
3. Flagging, recompute and summary
4. Delivery counters on the carrier
"""

from decimal import Decimal

from django.test import TestCase

from core.exceptions import BusinessValidationError, Conflict, InvalidState, Unauthorized
from logistics.models import RatingStatus, RatingType
from logistics.rating_service import RatingService
from logistics.tests.fixtures import (
    make_carrier, make_delivered_parcel, make_parcel, make_user,
)


class TestRatingSubmission(TestCase):
    """Tests for RatingService.submit()."""

    def setUp(self):
        self.sender = make_user('sender@example.com')
        self.carrier = make_carrier()
        self.stranger = make_user('stranger@example.com')
        self.parcel = make_delivered_parcel(self.sender, self.carrier)

    def test_sender_rates_carrier(self):
        """Type and reviewed user are derived from the reviewer."""
        rating = RatingService.submit(
            self.parcel.id, self.sender.id, 5,
            detailed={'punctuality': 4, 'care': 5},
            content='Great trip',
        )
        self.assertEqual(rating.rating_type, RatingType.SENDER_TO_CARRIER)
        self.assertEqual(rating.reviewed_id, self.carrier.id)
        self.assertEqual(rating.status, RatingStatus.PUBLISHED)
        self.assertEqual(rating.punctuality, 4)

        self.carrier.refresh_from_db()
        self.assertEqual(self.carrier.total_reviews, 1)
        self.assertEqual(self.carrier.average_rating, Decimal('5.00'))

    def test_carrier_rates_sender(self):
        rating = RatingService.submit(self.parcel.id, self.carrier.id, 4)
        self.assertEqual(rating.rating_type, RatingType.CARRIER_TO_SENDER)
        self.assertEqual(rating.reviewed_id, self.sender.id)

    def test_average_is_incremental(self):
        """4 then 5 across two parcels averages to 4.50."""
        other = make_delivered_parcel(self.sender, self.carrier)
        RatingService.submit(self.parcel.id, self.sender.id, 4)
        RatingService.submit(other.id, self.sender.id, 5)

        self.carrier.refresh_from_db()
        self.assertEqual(self.carrier.total_reviews, 2)
        self.assertEqual(self.carrier.rating_points, 9)
        self.assertEqual(self.carrier.average_rating, Decimal('4.50'))

    def test_duplicate_rating_conflicts(self):
        RatingService.submit(self.parcel.id, self.sender.id, 4)
        with self.assertRaises(Conflict):
            RatingService.submit(self.parcel.id, self.sender.id, 5)

    def test_parcel_must_be_delivered(self):
        pending = make_parcel(self.sender)
        with self.assertRaises(InvalidState):
            RatingService.submit(pending.id, self.sender.id, 4)

    def test_stranger_cannot_rate(self):
        with self.assertRaises(Unauthorized):
            RatingService.submit(self.parcel.id, self.stranger.id, 4)

    def test_score_out_of_range(self):
        for score in (0, 6, 4.5, True):
            with self.assertRaises(BusinessValidationError):
                RatingService.submit(self.parcel.id, self.sender.id, score)

    def test_unknown_criteria_rejected(self):
        with self.assertRaises(BusinessValidationError):
            RatingService.submit(self.parcel.id, self.sender.id, 4, detailed={'speed': 5})

    def test_mismatched_type_rejected(self):
        with self.assertRaises(BusinessValidationError):
            RatingService.submit(
                self.parcel.id, self.sender.id, 4,
                rating_type=RatingType.CARRIER_TO_SENDER,
            )


class TestRatingAggregate(TestCase):
    """Tests for flag, recompute and summary."""

    def setUp(self):
        self.sender = make_user('sender@example.com')
        self.carrier = make_carrier()
        first = make_delivered_parcel(self.sender, self.carrier)
        second = make_delivered_parcel(self.sender, self.carrier)
        self.low = RatingService.submit(first.id, self.sender.id, 2, detailed={'care': 2})
        self.high = RatingService.submit(second.id, self.sender.id, 5, detailed={'care': 5})

    def test_flag_removes_from_aggregate(self):
        RatingService.flag(self.low.id)

        self.carrier.refresh_from_db()
        self.assertEqual(self.carrier.total_reviews, 1)
        self.assertEqual(self.carrier.average_rating, Decimal('5.00'))

    def test_flag_is_idempotent(self):
        RatingService.flag(self.low.id)
        RatingService.flag(self.low.id)
        self.carrier.refresh_from_db()
        self.assertEqual(self.carrier.total_reviews, 1)

    def test_recompute_matches_incremental(self):
        self.carrier.refresh_from_db()
        incremental = (self.carrier.total_reviews, self.carrier.average_rating)
        recomputed = RatingService.recompute(self.carrier)
        self.assertEqual((recomputed.total_reviews, recomputed.average_rating), incremental)

    def test_summary(self):
        self.carrier.refresh_from_db()
        summary = RatingService.summary(self.carrier)
        self.assertEqual(summary['average'], 3.5)
        self.assertEqual(summary['count'], 2)
        self.assertEqual(summary['breakdown'], {1: 0, 2: 1, 3: 0, 4: 0, 5: 1})
        self.assertEqual(summary['criteria']['care'], 3.5)
        self.assertIsNone(summary['criteria']['punctuality'])

    def test_delivery_counters(self):
        """Each delivered parcel counts as completed and successful."""
        self.carrier.refresh_from_db()
        self.assertEqual(self.carrier.completed_deliveries, 2)
        self.assertEqual(self.carrier.successful_deliveries, 2)
        self.assertEqual(self.carrier.success_rate, 1.0)
