"""
E2E Tests for PARCELFLYTE Crowd-Shipping Flow

Tests the complete flow: travel → parcel → auto-proposal → negotiation →
acceptance → delivery → escrow release → ratings
"""

from datetime import timedelta
from decimal import Decimal

from django.test import override_settings
from django.utils import timezone
from rest_framework.test import APITransactionTestCase

from core.models import User
from finance.models import Payment, EscrowStatus
from logistics.models import Match, MatchStatus, Parcel, ParcelStatus, Travel
from logistics.tasks import expire_stale_matches
from logistics.tests.fixtures import make_carrier, make_user


@override_settings(MATCHING_AUTO_PROPOSE_ON_CREATE=True)
class E2ECrowdShippingFlowTest(APITransactionTestCase):
    """
    End-to-end tests for the complete parcel lifecycle.
    """

    def setUp(self):
        """Set up test data."""
        self.now = timezone.now()
        self.sender = make_user('sender@example.com')
        self.carrier = make_carrier()

    def post_travel(self):
        self.client.force_authenticate(user=self.carrier)
        response = self.client.post('/api/travels/', {
            'departure_city': 'London',
            'departure_country': 'United Kingdom',
            'departure_date': (self.now + timedelta(days=1)).isoformat(),
            'arrival_city': 'Paris',
            'arrival_country': 'France',
            'arrival_date': (self.now + timedelta(days=2)).isoformat(),
            'available_weight': 3,
            'available_volume': 1000,
            'base_delivery_fee': '20.00',
        }, format='json')
        self.assertEqual(response.status_code, 201)
        return Travel.objects.get(pk=response.data['id'])

    def post_parcel(self):
        self.client.force_authenticate(user=self.sender)
        response = self.client.post('/api/parcels/', {
            'recipient_name': 'Claire Martin',
            'recipient_phone': '+33600000000',
            'recipient_city': 'Paris',
            'recipient_country': 'France',
            'description': 'Books',
            'length': 10, 'width': 10, 'height': 10,
            'weight': 2.5,
            'declared_value': '150.00',
            'delivery_deadline': (self.now + timedelta(days=4)).isoformat(),
        }, format='json')
        self.assertEqual(response.status_code, 201)
        return Parcel.objects.get(pk=response.data['id'])

    def test_full_delivery_flow(self):
        """
        Flow: Travel → Parcel (auto-proposed) → Negotiate → Accept →
        Deliver → Release → Rate
        """
        # 1. CARRIER ANNOUNCES A TRIP
        travel = self.post_travel()

        # 2. SENDER POSTS A PARCEL (auto-propose runs on commit)
        parcel = self.post_parcel()
        match = Match.objects.get(parcel=parcel)
        self.assertEqual(match.status, MatchStatus.PROPOSED)
        self.assertEqual(match.travel_id, travel.id)
        self.assertEqual(match.initial_fee, Decimal('20.25'))

        # 3. CARRIER COUNTER-OFFERS
        self.client.force_authenticate(user=self.carrier)
        response = self.client.post(
            f'/api/matches/{match.id}/negotiate/', {'fee': '21.00'}, format='json'
        )
        self.assertEqual(response.status_code, 201)

        # 4. SENDER ACCEPTS (escrow funded)
        self.client.force_authenticate(user=self.sender)
        response = self.client.post(f'/api/matches/{match.id}/accept/', {
            'agreement': {'pickup_location': 'St Pancras, Platform 9'},
        }, format='json')
        self.assertEqual(response.status_code, 200)

        payment = Payment.objects.get(match=match)
        self.assertEqual(payment.amount, Decimal('22.05'))
        self.assertEqual(payment.escrow_status, EscrowStatus.FUNDED)

        parcel.refresh_from_db()
        travel.refresh_from_db()
        self.assertEqual(parcel.status, ParcelStatus.MATCHED)
        self.assertEqual(travel.total_parcels, 1)

        # 5. CARRIER DELIVERS
        self.client.force_authenticate(user=self.carrier)
        for new_status in ('in_transit', 'delivered'):
            response = self.client.post(
                f'/api/parcels/{parcel.id}/status/', {'status': new_status}, format='json'
            )
            self.assertEqual(response.status_code, 200)

        # 6. SENDER RELEASES THE ESCROW
        self.client.force_authenticate(user=self.sender)
        response = self.client.post(f'/api/payments/{payment.id}/release/')
        self.assertEqual(response.data['escrow_status'], EscrowStatus.RELEASED)

        # 7. BOTH PARTIES RATE EACH OTHER
        response = self.client.post('/api/ratings/', {
            'parcel_id': str(parcel.id), 'overall_rating': 5, 'punctuality': 5,
        }, format='json')
        self.assertEqual(response.status_code, 201)

        self.client.force_authenticate(user=self.carrier)
        response = self.client.post('/api/ratings/', {
            'parcel_id': str(parcel.id), 'overall_rating': 4,
        }, format='json')
        self.assertEqual(response.status_code, 201)

        carrier = User.objects.get(pk=self.carrier.pk)
        sender = User.objects.get(pk=self.sender.pk)
        self.assertEqual(carrier.average_rating, Decimal('5.00'))
        self.assertEqual(carrier.completed_deliveries, 1)
        self.assertEqual(sender.average_rating, Decimal('4.00'))

    def test_unanswered_proposal_expires(self):
        """A proposal nobody answers is swept after its deadline."""
        self.post_travel()
        parcel = self.post_parcel()
        match = Match.objects.get(parcel=parcel)

        Match.objects.filter(pk=match.pk).update(expires_at=timezone.now() - timedelta(minutes=5))
        self.assertEqual(expire_stale_matches.delay().get(), 1)

        match.refresh_from_db()
        self.assertEqual(match.status, MatchStatus.EXPIRED)

        # The parcel is still available for a fresh proposal
        self.client.force_authenticate(user=self.sender)
        response = self.client.post('/api/matches/', {
            'parcel_id': str(parcel.id),
            'travel_id': str(match.travel_id),
        }, format='json')
        self.assertEqual(response.status_code, 201)
