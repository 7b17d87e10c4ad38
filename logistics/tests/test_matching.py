"""
PARCELFLYTE Match Finder Tests
==============================

Tests for:
1. Hard eligibility constraints
2. Caller filters (AND semantics)
3. Ranking and auto-match selection
4. Free-form travel search
"""

from datetime import timedelta
from decimal import Decimal

from django.test import TestCase, override_settings
from django.utils import timezone

from core.exceptions import NotFound
from logistics.models import TravelMode, TravelStatus
from logistics.services.matching import MatchFinder
from logistics.tests.fixtures import make_carrier, make_parcel, make_travel, make_user


class TestMatchFinder(TestCase):
    """Tests for MatchFinder.find_matches_for_parcel()."""

    def setUp(self):
        self.now = timezone.now()
        self.sender = make_user('sender@example.com')
        self.carrier = make_carrier(average_rating=Decimal('4.50'), total_reviews=12)
        self.other_carrier = make_carrier('other@example.com')
        self.parcel = make_parcel(self.sender, self.now)
        self.finder = MatchFinder()

    def travel_ids(self, candidates):
        return [candidate.travel.id for candidate in candidates]

    # ==========================================
    # Hard constraints
    # ==========================================

    def test_eligible_travel_returned(self):
        travel = make_travel(self.carrier, self.now)
        candidates = self.finder.find_matches_for_parcel(self.parcel.id)
        self.assertEqual(self.travel_ids(candidates), [travel.id])

    def test_closed_travels_excluded(self):
        """Only planned and confirmed travels are candidates."""
        make_travel(self.carrier, self.now, status=TravelStatus.IN_PROGRESS)
        make_travel(self.carrier, self.now, status=TravelStatus.CANCELLED)
        confirmed = make_travel(self.carrier, self.now, status=TravelStatus.CONFIRMED)
        candidates = self.finder.find_matches_for_parcel(self.parcel.id)
        self.assertEqual(self.travel_ids(candidates), [confirmed.id])

    def test_insufficient_capacity_excluded(self):
        make_travel(self.carrier, self.now, available_weight=2)
        make_travel(self.carrier, self.now, available_volume=500)
        self.assertEqual(self.finder.find_matches_for_parcel(self.parcel.id), [])

    def test_departure_after_deadline_excluded(self):
        make_travel(
            self.carrier, self.now,
            departure_date=self.now + timedelta(days=5),
            arrival_date=self.now + timedelta(days=6),
        )
        self.assertEqual(self.finder.find_matches_for_parcel(self.parcel.id), [])

    def test_missing_parcel(self):
        import uuid
        with self.assertRaises(NotFound):
            self.finder.find_matches_for_parcel(uuid.uuid4())

    # ==========================================
    # Filters
    # ==========================================

    def test_filters_are_combined(self):
        """Every supplied filter narrows the candidates."""
        cheap_air = make_travel(self.carrier, self.now, base_delivery_fee=Decimal('10.00'))
        make_travel(self.carrier, self.now, base_delivery_fee=Decimal('10.00'),
                    travel_mode=TravelMode.LAND)
        make_travel(self.carrier, self.now, base_delivery_fee=Decimal('22.00'))
        make_travel(self.other_carrier, self.now, base_delivery_fee=Decimal('10.00'))

        candidates = self.finder.find_matches_for_parcel(self.parcel.id, {
            'max_fee': Decimal('15.00'),
            'min_rating': Decimal('4.00'),
            'travel_mode': TravelMode.AIR,
            'arrival_country': 'France',
        })
        self.assertEqual(self.travel_ids(candidates), [cheap_air.id])

    @override_settings(MATCHING_CANDIDATE_LIMIT=2)
    def test_candidate_cap(self):
        for _ in range(4):
            make_travel(self.carrier, self.now)
        self.assertEqual(len(MatchFinder().find_matches_for_parcel(self.parcel.id)), 2)

    # ==========================================
    # Ranking
    # ==========================================

    def test_ranked_by_score_descending(self):
        """A well-fitting travel outranks a loose one."""
        loose = make_travel(self.other_carrier, self.now, available_weight=50,
                            available_volume=50000)
        tight = make_travel(self.carrier, self.now, available_weight=3,
                            available_volume=1000)
        candidates = self.finder.find_matches_for_parcel(self.parcel.id)

        self.assertEqual(self.travel_ids(candidates), [tight.id, loose.id])
        scores = [candidate.match_score for candidate in candidates]
        self.assertEqual(scores, sorted(scores, reverse=True))

    def test_candidate_payload(self):
        make_travel(self.carrier, self.now)
        payload = self.finder.find_matches_for_parcel(self.parcel.id)[0].to_dict()
        self.assertEqual(payload['carrier_id'], str(self.carrier.id))
        self.assertAlmostEqual(payload['match_score'], 62.42, places=2)
        self.assertEqual(payload['estimated_delivery_fee'], 20.0)
        self.assertIn('timing_match', payload['match_reasons'])

    # ==========================================
    # Auto-match
    # ==========================================

    def test_auto_match_keeps_high_scores_only(self):
        """Only candidates scoring at least 70 are kept."""
        good = make_travel(self.carrier, self.now, available_weight=3, available_volume=1000)
        make_travel(self.other_carrier, self.now)
        selected = self.finder.auto_match_parcel(self.parcel.id)
        self.assertEqual(self.travel_ids(selected), [good.id])
        self.assertGreaterEqual(selected[0].match_score, 70)

    @override_settings(MATCHING_AUTO_MATCH_LIMIT=2)
    def test_auto_match_limit(self):
        for _ in range(3):
            make_travel(self.carrier, self.now, available_weight=3, available_volume=1000)
        self.assertEqual(len(self.finder.auto_match_parcel(self.parcel.id)), 2)


class TestTravelSearch(TestCase):
    """Tests for MatchFinder.find_available_travels()."""

    def setUp(self):
        self.now = timezone.now()
        self.carrier = make_carrier()
        self.paris = make_travel(self.carrier, self.now)
        self.berlin = make_travel(self.carrier, self.now, arrival_city='Berlin',
                                  arrival_country='Germany')

    def test_city_search_is_case_insensitive(self):
        travels = MatchFinder.find_available_travels({'arrival_city': 'paris'})
        self.assertEqual(travels, [self.paris])

    def test_weight_criteria(self):
        self.assertEqual(MatchFinder.find_available_travels({'weight': 20}), [])

    def test_pagination(self):
        first = MatchFinder.find_available_travels({}, offset=0, limit=1)
        second = MatchFinder.find_available_travels({}, offset=1, limit=1)
        self.assertEqual(len(first), 1)
        self.assertEqual(len(second), 1)
        self.assertNotEqual(first[0].id, second[0].id)
