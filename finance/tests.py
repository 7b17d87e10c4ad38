"""
PARCELFLYTE Finance Tests
=========================

Tests for:
1. Escrow payment creation for accepted matches
2. Release, refund and dispute transitions
3. Payments API (visibility, permissions)
"""

import re
from decimal import Decimal

from django.test import TestCase
from rest_framework import status
from rest_framework.test import APITestCase

from core.exceptions import BusinessValidationError, Conflict, InvalidState
from core.models import UserRole
from finance.models import (
    Payment, PaymentStatus, EscrowStatus, DisputeReason, DisputeStatus, generate_payment_id,
)
from finance.services import PaymentService, platform_fee_for
from logistics.models import ParcelStatus, ParcelPaymentStatus
from logistics.services.lifecycle import MatchLifecycle
from logistics.tests.fixtures import make_carrier, make_parcel, make_travel, make_user


class EscrowTestMixin:

    def setUp(self):
        self.sender = make_user('sender@example.com')
        self.carrier = make_carrier()
        self.parcel = make_parcel(self.sender)
        self.travel = make_travel(self.carrier)
        self.match = MatchLifecycle.create(
            self.parcel.id, self.travel.id, self.sender.id, self.carrier.id
        )

    def accept(self, **kwargs):
        self.match = MatchLifecycle.accept(self.match.id, **kwargs)
        return Payment.objects.get(match=self.match)

    def deliver(self):
        self.parcel.refresh_from_db()
        self.parcel.transition_to(ParcelStatus.IN_TRANSIT)
        self.parcel.transition_to(ParcelStatus.DELIVERED)


class TestPaymentCreation(EscrowTestMixin, TestCase):
    """Tests for PaymentService.create_for_match()."""

    def test_platform_fee(self):
        """Platform fee is 5% of the delivery fee, rounded to cents."""
        self.assertEqual(platform_fee_for(Decimal('20.00')), Decimal('1.00'))
        self.assertEqual(platform_fee_for(Decimal('19.99')), Decimal('1.00'))

    def test_payment_id_format(self):
        self.assertRegex(generate_payment_id(), r'^PAY-\d+-[a-z0-9]{9}$')

    def test_payment_created_on_accept(self):
        payment = self.accept(payment_method='paypal', insurance_fee=Decimal('3.00'))

        self.assertEqual(payment.status, PaymentStatus.PENDING)
        self.assertEqual(payment.escrow_status, EscrowStatus.FUNDED)
        self.assertEqual(payment.payment_method, 'paypal')
        self.assertEqual(payment.amount, Decimal('24.00'))
        self.assertEqual(payment.sender_id, self.sender.id)
        self.assertEqual(payment.carrier_id, self.carrier.id)
        self.assertTrue(re.match(r'^PAY-', payment.payment_id))

    def test_match_must_be_accepted(self):
        with self.assertRaises(InvalidState):
            PaymentService.create_for_match(self.match)

    def test_one_payment_per_match(self):
        self.accept()
        with self.assertRaises(Conflict):
            PaymentService.create_for_match(self.match)

    def test_unknown_payment_method_rolls_back_accept(self):
        """Acceptance and payment creation succeed or fail together."""
        with self.assertRaises(BusinessValidationError):
            MatchLifecycle.accept(self.match.id, payment_method='cash')

        self.match.refresh_from_db()
        self.parcel.refresh_from_db()
        self.assertTrue(self.match.is_proposed)
        self.assertEqual(self.parcel.status, ParcelStatus.PENDING)


class TestEscrowTransitions(EscrowTestMixin, TestCase):
    """Tests for release, refund and disputes."""

    def setUp(self):
        super().setUp()
        self.payment = self.accept()

    def test_release_requires_delivery(self):
        with self.assertRaises(InvalidState):
            PaymentService.release(self.payment)

    def test_release_after_delivery(self):
        self.deliver()
        payment = PaymentService.release(self.payment)

        self.assertEqual(payment.escrow_status, EscrowStatus.RELEASED)
        self.assertEqual(payment.status, PaymentStatus.COMPLETED)
        self.assertIsNotNone(payment.released_at)
        self.parcel.refresh_from_db()
        self.assertEqual(self.parcel.payment_status, ParcelPaymentStatus.RELEASED)

    def test_full_refund(self):
        payment = PaymentService.refund(self.payment, reason='Trip cancelled')
        self.assertEqual(payment.escrow_status, EscrowStatus.REFUNDED)
        self.assertEqual(payment.refund_amount, payment.amount)
        self.parcel.refresh_from_db()
        self.assertEqual(self.parcel.payment_status, ParcelPaymentStatus.REFUNDED)

    def test_partial_refund_bounds(self):
        with self.assertRaises(BusinessValidationError):
            PaymentService.refund(self.payment, amount=Decimal('500.00'))
        payment = PaymentService.refund(self.payment, amount=Decimal('5.00'))
        self.assertEqual(payment.refund_amount, Decimal('5.00'))

    def test_refund_does_not_touch_travel_totals(self):
        PaymentService.refund(self.payment)
        self.travel.refresh_from_db()
        self.assertEqual(self.travel.total_parcels, 1)

    def test_no_refund_after_release(self):
        self.deliver()
        PaymentService.release(self.payment)
        with self.assertRaises(InvalidState):
            PaymentService.refund(self.payment)

    def test_dispute_then_refund_resolution(self):
        payment = PaymentService.open_dispute(
            self.payment, DisputeReason.DAMAGE, 'Screen cracked'
        )
        self.assertEqual(payment.escrow_status, EscrowStatus.DISPUTED)
        self.assertEqual(payment.dispute_status, DisputeStatus.OPEN)

        with self.assertRaises(InvalidState):
            PaymentService.release(payment)

        payment = PaymentService.resolve_dispute(payment, 'Damage confirmed', release=False)
        self.assertEqual(payment.escrow_status, EscrowStatus.REFUNDED)
        self.assertEqual(payment.dispute_status, DisputeStatus.RESOLVED)

    def test_dispute_release_resolution(self):
        PaymentService.open_dispute(self.payment, DisputeReason.DELAY)
        payment = PaymentService.resolve_dispute(self.payment, 'Delay acceptable', release=True)
        self.assertEqual(payment.escrow_status, EscrowStatus.RELEASED)

    def test_unknown_dispute_reason(self):
        with self.assertRaises(BusinessValidationError):
            PaymentService.open_dispute(self.payment, 'bored')

    def test_resolve_without_dispute(self):
        with self.assertRaises(InvalidState):
            PaymentService.resolve_dispute(self.payment, 'Nothing to do', release=True)


class TestPaymentAPI(EscrowTestMixin, APITestCase):
    """Tests for /api/payments/."""

    def setUp(self):
        super().setUp()
        self.payment = self.accept()
        self.stranger = make_user('stranger@example.com')
        self.admin = make_user('admin@example.com', roles=[UserRole.ADMIN.value])

    def test_payments_visible_to_parties_only(self):
        self.client.force_authenticate(user=self.carrier)
        self.assertEqual(self.client.get('/api/payments/').data['count'], 1)

        self.client.force_authenticate(user=self.stranger)
        self.assertEqual(self.client.get('/api/payments/').data['count'], 0)

    def test_amount_filter(self):
        self.client.force_authenticate(user=self.sender)
        response = self.client.get('/api/payments/', {'min_amount': '100'})
        self.assertEqual(response.data['count'], 0)

    def test_create_duplicate_payment_conflicts(self):
        self.client.force_authenticate(user=self.sender)
        response = self.client.post('/api/payments/', {
            'match_id': str(self.match.id),
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_sender_releases_after_delivery(self):
        self.deliver()
        url = f'/api/payments/{self.payment.id}/release/'

        self.client.force_authenticate(user=self.carrier)
        self.assertEqual(self.client.post(url).status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.sender)
        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['escrow_status'], EscrowStatus.RELEASED)

    def test_dispute_resolved_by_admin_only(self):
        self.client.force_authenticate(user=self.sender)
        response = self.client.post(
            f'/api/payments/{self.payment.id}/dispute/',
            {'reason': 'non_delivery', 'description': 'Never arrived'}, format='json'
        )
        self.assertEqual(response.data['escrow_status'], EscrowStatus.DISPUTED)

        url = f'/api/payments/{self.payment.id}/resolve/'
        payload = {'resolution': 'Refund approved', 'release': False}
        response = self.client.post(url, payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.admin)
        response = self.client.post(url, payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['escrow_status'], EscrowStatus.REFUNDED)

    def test_carrier_refunds(self):
        self.client.force_authenticate(user=self.carrier)
        response = self.client.post(
            f'/api/payments/{self.payment.id}/refund/', {'reason': 'Cannot travel'}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], PaymentStatus.REFUNDED)
