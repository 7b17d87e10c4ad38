"""
PARCELFLYTE Match Lifecycle Tests
=================================

Tests for:
1. Proposal creation and duplicate protection
2. Negotiation (fee cap, parties, append-only history)
3. Acceptance side effects (parcel, travel totals, escrow payment)
4. Reject / cancel / lazy expiry and the sweeper
5. Auto-propose, Celery tasks and the parcel signal
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase, override_settings
from django.utils import timezone

from core.exceptions import (
    BusinessValidationError, Conflict, InvalidState, MatchExpired, NotFound, Unauthorized,
)
from core.models import UserRole
from finance.models import Payment, EscrowStatus
from logistics.models import (
    Match, MatchStatus, NegotiationEntry, ParcelStatus, ParcelPaymentStatus,
)
from logistics.services.lifecycle import MatchLifecycle, PARCEL_MATCHED_ELSEWHERE, is_expired
from logistics.tasks import auto_propose_for_parcel, expire_stale_matches
from logistics.tests.fixtures import make_carrier, make_parcel, make_travel, make_user


class LifecycleTestMixin:

    def setUp(self):
        self.now = timezone.now()
        self.sender = make_user('sender@example.com')
        self.carrier = make_carrier(average_rating=Decimal('4.50'), total_reviews=12)
        self.stranger = make_user('stranger@example.com')
        self.admin = make_user('admin@example.com', roles=[UserRole.ADMIN.value])
        self.parcel = make_parcel(self.sender, self.now)
        self.travel = make_travel(self.carrier, self.now)

    def propose(self, travel=None, **kwargs):
        travel = travel or self.travel
        return MatchLifecycle.create(
            self.parcel.id, travel.id, self.sender.id, travel.carrier_id, **kwargs
        )

    def expire(self, match):
        Match.objects.filter(pk=match.pk).update(expires_at=timezone.now() - timedelta(minutes=1))


class TestMatchCreate(LifecycleTestMixin, TestCase):
    """Tests for MatchLifecycle.create()."""

    def test_create_proposed_match(self):
        """A new match is proposed, scored and expires 24h later."""
        match = self.propose()

        self.assertEqual(match.status, MatchStatus.PROPOSED)
        self.assertEqual(match.initial_fee, Decimal('20.00'))
        self.assertEqual(match.expires_at - match.proposed_at, timedelta(hours=24))
        self.assertAlmostEqual(match.match_score, 62.42, places=2)
        self.assertEqual(match.score_breakdown['route_score'], 0.5)
        self.assertEqual(match.suggested_pricing['max_fee'], 22.5)
        self.assertTrue(match.match_details['route_match']['arrival'])

    def test_create_with_agreement(self):
        match = self.propose(
            initial_fee=Decimal('18.00'),
            agreement={'pickup_location': 'King\'s Cross', 'special_instructions': 'Call first'},
        )
        match.refresh_from_db()
        self.assertEqual(match.initial_fee, Decimal('18.00'))
        self.assertEqual(match.pickup_location, 'King\'s Cross')

    def test_duplicate_active_match_conflicts(self):
        """A second proposal for the same pair fails with Conflict."""
        self.propose()
        with self.assertRaises(Conflict):
            self.propose()

    def test_new_proposal_allowed_after_rejection(self):
        first = self.propose()
        MatchLifecycle.reject(first.id)
        second = self.propose()
        self.assertNotEqual(first.id, second.id)

    def test_parcel_must_be_pending(self):
        self.parcel.transition_to(ParcelStatus.CANCELLED)
        with self.assertRaises(InvalidState):
            self.propose()

    def test_travel_must_be_open(self):
        travel = make_travel(self.carrier, self.now, status='completed')
        with self.assertRaises(InvalidState):
            self.propose(travel)

    def test_sender_must_own_parcel(self):
        with self.assertRaises(BusinessValidationError):
            MatchLifecycle.create(
                self.parcel.id, self.travel.id, self.stranger.id, self.carrier.id
            )

    def test_initial_fee_above_cap_rejected(self):
        with self.assertRaises(BusinessValidationError) as ctx:
            self.propose(initial_fee=Decimal('25.00'))
        self.assertEqual(ctx.exception.extra['max_fee'], 22.5)

    def test_missing_travel(self):
        import uuid
        with self.assertRaises(NotFound):
            MatchLifecycle.create(self.parcel.id, uuid.uuid4(), self.sender.id, self.carrier.id)


class TestMatchNegotiation(LifecycleTestMixin, TestCase):
    """Tests for MatchLifecycle.negotiate()."""

    def setUp(self):
        super().setUp()
        self.match = self.propose()

    def test_negotiation_appends_history(self):
        MatchLifecycle.negotiate(self.match.id, self.carrier.id, Decimal('22.00'), 'Heavy box')
        MatchLifecycle.negotiate(self.match.id, self.sender.id, Decimal('19.00'))

        self.match.refresh_from_db()
        history = list(self.match.negotiation_history.values_list('amount', flat=True))
        self.assertEqual(history, [Decimal('22.00'), Decimal('19.00')])
        self.assertEqual(self.match.proposed_fee, Decimal('19.00'))

    def test_fee_above_cap_leaves_history_unchanged(self):
        """25 on a 100 parcel (cap 15) fails validation."""
        parcel = make_parcel(self.sender, self.now, declared_value=Decimal('100.00'))
        travel = make_travel(self.carrier, self.now, base_delivery_fee=Decimal('10.00'))
        match = MatchLifecycle.create(parcel.id, travel.id, self.sender.id, self.carrier.id)

        with self.assertRaises(BusinessValidationError):
            MatchLifecycle.negotiate(match.id, self.carrier.id, Decimal('25.00'))

        match.refresh_from_db()
        self.assertIsNone(match.proposed_fee)
        self.assertFalse(NegotiationEntry.objects.filter(match=match).exists())

    def test_non_positive_fee_rejected(self):
        with self.assertRaises(BusinessValidationError):
            MatchLifecycle.negotiate(self.match.id, self.carrier.id, Decimal('0.00'))

    def test_stranger_cannot_negotiate(self):
        with self.assertRaises(Unauthorized):
            MatchLifecycle.negotiate(self.match.id, self.stranger.id, Decimal('20.00'))

    def test_negotiating_expired_match(self):
        """The expiry is kept even though the call fails."""
        self.expire(self.match)
        with self.assertRaises(MatchExpired):
            MatchLifecycle.negotiate(self.match.id, self.carrier.id, Decimal('20.00'))

        self.match.refresh_from_db()
        self.assertEqual(self.match.status, MatchStatus.EXPIRED)
        self.assertIsNotNone(self.match.expired_at)

    def test_negotiating_terminal_match(self):
        MatchLifecycle.reject(self.match.id)
        with self.assertRaises(InvalidState):
            MatchLifecycle.negotiate(self.match.id, self.carrier.id, Decimal('20.00'))


class TestMatchAccept(LifecycleTestMixin, TestCase):
    """Tests for MatchLifecycle.accept()."""

    # ==========================================
    # Final fee precedence
    # ==========================================

    def test_falls_back_to_initial_fee(self):
        match = MatchLifecycle.accept(self.propose().id)
        self.assertEqual(match.final_fee, Decimal('20.00'))

    def test_falls_back_to_last_proposed_fee(self):
        match = self.propose()
        MatchLifecycle.negotiate(match.id, self.carrier.id, Decimal('21.00'))
        MatchLifecycle.negotiate(match.id, self.sender.id, Decimal('19.50'))
        match = MatchLifecycle.accept(match.id)
        self.assertEqual(match.final_fee, Decimal('19.50'))

    def test_explicit_final_fee_wins(self):
        match = self.propose()
        MatchLifecycle.negotiate(match.id, self.carrier.id, Decimal('21.00'))
        match = MatchLifecycle.accept(match.id, final_fee=Decimal('18.00'))
        self.assertEqual(match.final_fee, Decimal('18.00'))

    def test_final_fee_above_cap_rejected(self):
        match = self.propose()
        with self.assertRaises(BusinessValidationError):
            MatchLifecycle.accept(match.id, final_fee=Decimal('30.00'))
        match.refresh_from_db()
        self.assertEqual(match.status, MatchStatus.PROPOSED)

    # ==========================================
    # Side effects
    # ==========================================

    def test_accept_side_effects(self):
        """Parcel matched, travel totals incremented, escrow funded."""
        match = MatchLifecycle.accept(self.propose().id)

        self.assertEqual(match.status, MatchStatus.ACCEPTED)
        self.assertEqual(match.platform_fee, Decimal('1.00'))
        self.assertEqual(match.total_amount, Decimal('21.00'))

        self.parcel.refresh_from_db()
        self.assertEqual(self.parcel.status, ParcelStatus.MATCHED)
        self.assertEqual(self.parcel.matched_carrier_id, self.carrier.id)
        self.assertEqual(self.parcel.matched_travel_id, self.travel.id)
        self.assertEqual(self.parcel.agreed_delivery_fee, Decimal('20.00'))
        self.assertEqual(self.parcel.payment_status, ParcelPaymentStatus.PAID)
        self.assertIsNotNone(self.parcel.matched_at)

        self.travel.refresh_from_db()
        self.assertEqual(self.travel.total_parcels, 1)
        self.assertEqual(self.travel.total_weight, 2.5)
        self.assertEqual(self.travel.total_value, Decimal('150.00'))

        payment = Payment.objects.get(match=match)
        self.assertEqual(payment.escrow_status, EscrowStatus.FUNDED)
        self.assertEqual(payment.delivery_fee, Decimal('20.00'))
        self.assertEqual(payment.platform_fee, Decimal('1.00'))
        self.assertEqual(payment.amount, Decimal('21.00'))

    def test_running_totals_match_ledger(self):
        MatchLifecycle.accept(self.propose().id)
        self.travel.refresh_from_db()
        before = (self.travel.total_parcels, self.travel.total_weight, self.travel.total_value)
        self.travel.reconcile_totals()
        self.assertEqual(
            (self.travel.total_parcels, self.travel.total_weight, self.travel.total_value),
            before
        )

    def test_competing_proposals_cancelled(self):
        other_travel = make_travel(make_carrier('second@example.com'), self.now)
        winner = self.propose()
        loser = self.propose(other_travel)

        MatchLifecycle.accept(winner.id)

        loser.refresh_from_db()
        self.assertEqual(loser.status, MatchStatus.CANCELLED)
        self.assertEqual(loser.cancellation_reason, PARCEL_MATCHED_ELSEWHERE)

    def test_accept_twice_fails(self):
        match = self.propose()
        MatchLifecycle.accept(match.id)
        with self.assertRaises(InvalidState):
            MatchLifecycle.accept(match.id)
        self.assertEqual(Payment.objects.filter(match=match).count(), 1)

    def test_accept_expired_has_no_side_effects(self):
        """An expired proposal cannot be accepted and nothing else changes."""
        match = self.propose()
        self.expire(match)

        with self.assertRaises(MatchExpired):
            MatchLifecycle.accept(match.id)

        match.refresh_from_db()
        self.parcel.refresh_from_db()
        self.travel.refresh_from_db()
        self.assertEqual(match.status, MatchStatus.EXPIRED)
        self.assertEqual(self.parcel.status, ParcelStatus.PENDING)
        self.assertEqual(self.travel.total_parcels, 0)
        self.assertFalse(Payment.objects.filter(match=match).exists())

    def test_stranger_cannot_accept(self):
        match = self.propose()
        with self.assertRaises(Unauthorized):
            MatchLifecycle.accept(match.id, actor=self.stranger)

    def test_admin_can_accept(self):
        match = MatchLifecycle.accept(self.propose().id, actor=self.admin)
        self.assertEqual(match.status, MatchStatus.ACCEPTED)


class TestMatchTermination(LifecycleTestMixin, TestCase):
    """Tests for reject, cancel and expiry."""

    def test_reject_records_reason(self):
        match = MatchLifecycle.reject(self.propose().id, 'Too expensive', actor=self.sender)
        self.assertEqual(match.status, MatchStatus.REJECTED)
        self.assertEqual(match.rejection_reason, 'Too expensive')
        self.assertIsNotNone(match.rejected_at)

        self.parcel.refresh_from_db()
        self.assertEqual(self.parcel.status, ParcelStatus.PENDING)

    def test_cancel_keeps_the_record(self):
        match = MatchLifecycle.cancel(self.propose().id, 'Changed plans')
        self.assertEqual(match.status, MatchStatus.CANCELLED)
        self.assertTrue(Match.objects.filter(pk=match.pk).exists())

    def test_no_transition_out_of_terminal_state(self):
        match = self.propose()
        MatchLifecycle.cancel(match.id)
        with self.assertRaises(InvalidState):
            MatchLifecycle.reject(match.id)
        with self.assertRaises(InvalidState):
            MatchLifecycle.accept(match.id)

    def test_get_expires_lazily(self):
        match = self.propose()
        self.expire(match)
        with self.assertRaises(MatchExpired):
            MatchLifecycle.get(match.id)
        self.assertEqual(Match.objects.get(pk=match.pk).status, MatchStatus.EXPIRED)

    def test_get_expired_match_afterwards(self):
        """Once expired, reads return the terminal match."""
        match = self.propose()
        self.expire(match)
        MatchLifecycle.expire_stale()
        self.assertEqual(MatchLifecycle.get(match.id).status, MatchStatus.EXPIRED)

    def test_is_expired_boundary(self):
        now = timezone.now()
        self.assertTrue(is_expired(now, now))
        self.assertFalse(is_expired(now, now + timedelta(seconds=1)))

    def test_expire_stale_sweeper(self):
        stale = self.propose()
        fresh = self.propose(make_travel(self.carrier, self.now))
        self.expire(stale)

        self.assertEqual(expire_stale_matches(), 1)
        self.assertEqual(Match.objects.get(pk=stale.pk).status, MatchStatus.EXPIRED)
        self.assertEqual(Match.objects.get(pk=fresh.pk).status, MatchStatus.PROPOSED)


class TestAutoPropose(LifecycleTestMixin, TestCase):
    """Tests for MatchLifecycle.auto_propose() and the background hooks."""

    def setUp(self):
        super().setUp()
        self.good_travel = make_travel(
            self.carrier, self.now, available_weight=3, available_volume=1000
        )

    def test_auto_propose_creates_matches(self):
        matches = MatchLifecycle.auto_propose(self.parcel.id)
        self.assertEqual([match.travel_id for match in matches], [self.good_travel.id])
        # Suggested fee of the 18.00-22.50 range
        self.assertEqual(matches[0].initial_fee, Decimal('20.25'))

    def test_auto_propose_skips_existing_pairs(self):
        self.propose(self.good_travel)
        self.assertEqual(MatchLifecycle.auto_propose(self.parcel.id), [])

    def test_auto_propose_task(self):
        match_ids = auto_propose_for_parcel(str(self.parcel.id))
        self.assertEqual(len(match_ids), 1)

    def test_auto_propose_task_missing_parcel(self):
        import uuid
        self.assertEqual(auto_propose_for_parcel(str(uuid.uuid4())), [])

    @override_settings(MATCHING_AUTO_PROPOSE_ON_CREATE=True)
    def test_parcel_creation_queues_auto_propose(self):
        with patch.object(auto_propose_for_parcel, 'delay') as delay:
            with self.captureOnCommitCallbacks(execute=True):
                parcel = make_parcel(self.sender, self.now)
        delay.assert_called_once_with(str(parcel.id))

    def test_parcel_creation_without_auto_propose(self):
        with patch.object(auto_propose_for_parcel, 'delay') as delay:
            with self.captureOnCommitCallbacks(execute=True):
                make_parcel(self.sender, self.now)
        delay.assert_not_called()


class TestParcelTransitions(LifecycleTestMixin, TestCase):
    """Tests for Parcel.transition_to()."""

    def test_status_cannot_move_backwards(self):
        MatchLifecycle.accept(self.propose().id)
        self.parcel.refresh_from_db()
        self.parcel.transition_to(ParcelStatus.IN_TRANSIT)

        with self.assertRaises(InvalidState):
            self.parcel.transition_to(ParcelStatus.MATCHED)
        with self.assertRaises(InvalidState):
            self.parcel.transition_to(ParcelStatus.PENDING)

    def test_pending_parcel_cannot_skip_matching(self):
        with self.assertRaises(InvalidState):
            self.parcel.transition_to(ParcelStatus.DELIVERED)

    def test_unknown_status(self):
        with self.assertRaises(BusinessValidationError):
            self.parcel.transition_to('teleported')

    def test_lost_parcel_counts_as_unsuccessful(self):
        MatchLifecycle.accept(self.propose().id)
        self.parcel.refresh_from_db()
        self.parcel.transition_to(ParcelStatus.IN_TRANSIT)
        self.parcel.transition_to(ParcelStatus.LOST)

        self.carrier.refresh_from_db()
        self.assertEqual(self.carrier.completed_deliveries, 1)
        self.assertEqual(self.carrier.successful_deliveries, 0)

    def test_cancelling_sets_timestamp(self):
        self.parcel.transition_to(ParcelStatus.CANCELLED)
        self.assertIsNotNone(self.parcel.cancelled_at)
        self.assertTrue(self.parcel.is_terminal)


class TestFeeInputs(LifecycleTestMixin, TestCase):
    """Fee parsing and currency carried from the parcel."""

    NON_FINITE = ('NaN', 'Infinity', '-Infinity', Decimal('NaN'))

    def test_non_finite_initial_fee(self):
        for value in self.NON_FINITE:
            with self.subTest(value=value), self.assertRaises(BusinessValidationError):
                self.propose(initial_fee=value)
        self.assertFalse(Match.objects.exists())

    def test_non_finite_negotiated_fee(self):
        match = self.propose()
        for value in self.NON_FINITE:
            with self.subTest(value=value), self.assertRaises(BusinessValidationError):
                MatchLifecycle.negotiate(match.id, self.sender.id, value)
        self.assertFalse(NegotiationEntry.objects.filter(match=match).exists())

    def test_non_finite_final_fee(self):
        match = self.propose()
        for value in self.NON_FINITE:
            with self.subTest(value=value), self.assertRaises(BusinessValidationError):
                MatchLifecycle.accept(match.id, final_fee=value)

        match.refresh_from_db()
        self.assertTrue(match.is_proposed)
        self.assertFalse(Payment.objects.exists())

    def test_currency_follows_the_parcel(self):
        """The fee cap is in the parcel's currency, so the match and escrow are too."""
        parcel = make_parcel(self.sender, self.now, currency='EUR')
        self.assertEqual(self.travel.currency, 'USD')

        match = MatchLifecycle.create(parcel.id, self.travel.id, self.sender.id, self.carrier.id)
        self.assertEqual(match.currency, 'EUR')

        MatchLifecycle.accept(match.id)
        self.assertEqual(Payment.objects.get(match=match).currency, 'EUR')
