"""
LOGISTICS App - Match Lifecycle for PARCELFLYTE

State machine for matches:

    proposed ──▶ accepted | rejected | expired | cancelled

Only PROPOSED matches move; the other states are final.

Every mutation runs inside transaction.atomic with the match row locked
(select_for_update), so two concurrent accepts cannot both succeed.
Expiry is evaluated when a match is touched: a proposed match past its
deadline is marked expired (and the write is kept) before MatchExpired
is raised. The Celery sweeper (expire_stale) catches the untouched ones.
"""

import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from core.exceptions import (
    BusinessValidationError, Conflict, InvalidState, MatchExpired, Unauthorized,
    get_or_not_found,
)
from core.models import User
from finance.models import PaymentMethod
from finance.services import PaymentService, platform_fee_for
from logistics.models import (
    ACTIVE_MATCH_STATUSES, Match, MatchStatus, NegotiationEntry,
    Parcel, ParcelStatus, Travel,
)
from logistics.services.scoring import (
    MatchScorer, match_details, max_acceptable_fee, money, suggest_pricing,
)

logger = logging.getLogger(__name__)


AGREEMENT_FIELDS = (
    'pickup_location', 'pickup_date', 'delivery_location', 'delivery_date',
    'special_instructions', 'insurance_required', 'insurance_amount',
)

PARCEL_MATCHED_ELSEWHERE = "Parcel matched elsewhere"


def is_expired(now, expires_at) -> bool:
    """A proposal is usable strictly before its deadline."""
    return now >= expires_at


def _as_fee(value, label: str = 'fee') -> Decimal:
    try:
        amount = money(value)
    except (InvalidOperation, TypeError, ValueError):
        raise BusinessValidationError(f"Invalid {label}: {value}")
    if not amount.is_finite():
        raise BusinessValidationError(f"Invalid {label}: {value}")
    return amount


def _check_fee_cap(fee: Decimal, parcel: Parcel, label: str = 'Fee'):
    cap = max_acceptable_fee(parcel.declared_value)
    if fee > cap:
        raise BusinessValidationError(
            f"{label} exceeds maximum allowed ({money(cap)} {parcel.currency})",
            max_fee=float(money(cap)),
        )


class MatchLifecycle:
    """
    Usage:
        match = MatchLifecycle.create(parcel_id, travel_id, sender_id, carrier_id)
        MatchLifecycle.negotiate(match.id, carrier_id, Decimal('40.00'))
        MatchLifecycle.accept(match.id)
    """

    # ========================================
    # LOCKING & EXPIRY
    # ========================================

    @staticmethod
    def _lock(match_id) -> Match:
        queryset = Match.objects.select_for_update().select_related('parcel', 'travel')
        return get_or_not_found(queryset, match_id, 'Match')

    @staticmethod
    def _mark_expired(match: Match, now) -> Match:
        match.status = MatchStatus.EXPIRED
        match.expired_at = now
        match.save(update_fields=['status', 'expired_at', 'updated_at'])
        logger.info(f"[MATCH] Match {str(match.id)[:8]} expired")
        return match

    @classmethod
    def _run_locked(cls, match_id, operation: Callable[[Match], Any]):
        """
        Lock the match and apply an operation to it.

        A proposed match found past its deadline is expired instead and
        MatchExpired is raised once the expiry has been committed.
        """
        expired = False
        with transaction.atomic():
            match = cls._lock(match_id)
            now = timezone.now()
            if match.status == MatchStatus.PROPOSED and is_expired(now, match.expires_at):
                cls._mark_expired(match, now)
                expired = True
            else:
                result = operation(match)

        if expired:
            raise MatchExpired("Match has expired", match_id=str(match.id))
        return result

    @staticmethod
    def _require_proposed(match: Match):
        if match.status != MatchStatus.PROPOSED:
            raise InvalidState(
                f"Match is not in proposed status (status: {match.status})"
            )

    @staticmethod
    def _require_party(match: Match, actor):
        if actor is None:
            return
        if not match.is_party(actor.pk) and not actor.is_platform_admin:
            raise Unauthorized("Only the sender or the carrier can act on this match")

    @staticmethod
    def _apply_agreement(match: Match, agreement: Optional[Dict[str, Any]]) -> List[str]:
        if not agreement:
            return []
        unknown = set(agreement) - set(AGREEMENT_FIELDS)
        if unknown:
            raise BusinessValidationError(
                f"Unknown agreement fields: {', '.join(sorted(unknown))}"
            )
        for field, value in agreement.items():
            setattr(match, field, value)
        return list(agreement)

    # ========================================
    # READ
    # ========================================

    @classmethod
    def get(cls, match_id) -> Match:
        """
        Read a match, expiring it lazily.

        Raises:
            NotFound: If the match does not exist
            MatchExpired: If it was proposed and its deadline has passed
        """
        queryset = Match.objects.select_related('parcel', 'travel', 'sender', 'carrier')
        match = get_or_not_found(queryset, match_id, 'Match')
        if match.status == MatchStatus.PROPOSED and is_expired(timezone.now(), match.expires_at):
            # Re-check under the lock; another request may have accepted it
            cls._run_locked(match_id, lambda locked: None)
            match.refresh_from_db()
        return match

    # ========================================
    # CREATE
    # ========================================

    @classmethod
    def create(
        cls,
        parcel_id,
        travel_id,
        sender_id,
        carrier_id,
        initial_fee=None,
        agreement: Optional[Dict[str, Any]] = None,
        scorer: MatchScorer = None,
    ) -> Match:
        """
        Propose a parcel/travel pairing.

        Args:
            parcel_id, travel_id: the pair being matched
            sender_id: must own the parcel
            carrier_id: must own the travel
            initial_fee: opening fee (defaults to the travel's base fee)
            agreement: optional pickup/delivery terms

        Returns:
            Match instance in PROPOSED status, expiring after MATCHING_EXPIRY_HOURS

        Raises:
            NotFound: parcel, travel or users missing
            InvalidState: parcel not pending or travel not open
            BusinessValidationError: ownership mismatch or fee out of range
            Conflict: an active match already exists for this pair
        """
        parcel = get_or_not_found(Parcel.objects.all(), parcel_id, 'Parcel')
        travel = get_or_not_found(Travel.objects.all(), travel_id, 'Travel')
        sender = get_or_not_found(User.objects.all(), sender_id, 'User')
        carrier = get_or_not_found(User.objects.all(), carrier_id, 'User')

        if not parcel.is_pending:
            raise InvalidState("Parcel is not available for matching")
        if not travel.is_open:
            raise InvalidState("Travel is not available for matching")
        if parcel.sender_id != sender.pk:
            raise BusinessValidationError("Sender does not own this parcel")
        if travel.carrier_id != carrier.pk:
            raise BusinessValidationError("Carrier does not own this travel")

        fee = _as_fee(
            travel.base_delivery_fee if initial_fee is None else initial_fee,
            'initial fee'
        )
        if fee < 0:
            raise BusinessValidationError("Initial fee cannot be negative")
        _check_fee_cap(fee, parcel, 'Initial fee')

        if Match.objects.filter(
            parcel=parcel, travel=travel, status__in=ACTIVE_MATCH_STATUSES
        ).exists():
            raise Conflict("Match already exists for this parcel and travel")

        scorer = scorer or MatchScorer()
        breakdown = scorer.score(parcel, travel, carrier)
        now = timezone.now()

        match = Match(
            parcel=parcel,
            travel=travel,
            sender=sender,
            carrier=carrier,
            status=MatchStatus.PROPOSED,
            match_score=breakdown.total,
            score_breakdown=breakdown.to_dict(),
            match_details=match_details(parcel, travel, carrier),
            suggested_pricing=suggest_pricing(parcel, travel).to_dict(),
            initial_fee=fee,
            currency=parcel.currency,
            insurance_required=parcel.insurance_required,
            insurance_amount=parcel.insurance_amount,
            proposed_at=now,
            expires_at=now + timedelta(hours=settings.MATCHING_EXPIRY_HOURS),
        )
        cls._apply_agreement(match, agreement)

        try:
            with transaction.atomic():
                match.save(force_insert=True)
        except IntegrityError:
            # Lost a race against a concurrent create for the same pair
            raise Conflict("Match already exists for this parcel and travel")

        logger.info(
            f"[MATCH] Proposed {str(match.id)[:8]} | Parcel {str(parcel.id)[:8]} → "
            f"Travel {str(travel.id)[:8]} | Score: {match.match_score}"
        )
        return match

    # ========================================
    # NEGOTIATE
    # ========================================

    @classmethod
    def negotiate(cls, match_id, proposer_id, fee, message: str = '') -> NegotiationEntry:
        """
        Append a counter-offer to the negotiation history.

        Raises:
            InvalidState: match not proposed
            MatchExpired: proposal past its deadline
            Unauthorized: proposer is neither sender nor carrier
            BusinessValidationError: fee not positive or above the cap
        """
        amount = _as_fee(fee)

        def operation(match: Match) -> NegotiationEntry:
            cls._require_proposed(match)
            if not match.is_party(proposer_id):
                raise Unauthorized("Only the sender or the carrier can negotiate")
            if amount <= 0:
                raise BusinessValidationError("Fee must be greater than 0")
            _check_fee_cap(amount, match.parcel, 'Proposed fee')

            entry = NegotiationEntry.objects.create(
                match=match,
                proposer_id=proposer_id,
                amount=amount,
                message=message or '',
            )
            match.proposed_fee = amount
            match.save(update_fields=['proposed_fee', 'updated_at'])

            logger.info(
                f"[MATCH] Negotiation on {str(match.id)[:8]} | "
                f"{amount} {match.currency} proposed by {str(proposer_id)[:8]}"
            )
            return entry

        return cls._run_locked(match_id, operation)

    # ========================================
    # ACCEPT
    # ========================================

    @classmethod
    def accept(
        cls,
        match_id,
        final_fee=None,
        agreement: Optional[Dict[str, Any]] = None,
        actor=None,
        payment_method: str = None,
        insurance_fee=None,
    ) -> Match:
        """
        Accept a proposal and apply every side effect atomically.

        Final fee precedence: explicit final_fee, then the last proposed
        fee, then the initial fee.

        Side effects (same transaction):
          - parcel → MATCHED with the agreed amounts
          - travel running totals incremented
          - escrow payment created (funded)
          - other proposals on the same parcel cancelled
        """
        def operation(match: Match) -> Match:
            cls._require_proposed(match)
            cls._require_party(match, actor)

            if final_fee is not None:
                fee = _as_fee(final_fee, 'final fee')
            else:
                fee = match.current_fee
            if fee < 0:
                raise BusinessValidationError("Final fee cannot be negative")

            parcel = Parcel.objects.select_for_update().get(pk=match.parcel_id)
            travel = Travel.objects.select_for_update().get(pk=match.travel_id)
            _check_fee_cap(fee, parcel, 'Final fee')

            if not parcel.is_pending:
                raise InvalidState("Parcel is no longer available for matching")
            if not travel.is_open:
                raise InvalidState("Travel is no longer available for matching")

            now = timezone.now()
            platform_fee = platform_fee_for(fee)
            total_amount = fee + platform_fee

            update_fields = cls._apply_agreement(match, agreement)
            match.status = MatchStatus.ACCEPTED
            match.final_fee = fee
            match.accepted_at = now
            match.platform_fee = platform_fee
            match.total_amount = total_amount
            match.parcel = parcel
            match.save(update_fields=update_fields + [
                'status', 'final_fee', 'accepted_at', 'platform_fee',
                'total_amount', 'updated_at'
            ])

            parcel.transition_to(
                ParcelStatus.MATCHED,
                matched_travel=travel,
                matched_carrier_id=match.carrier_id,
                agreed_delivery_fee=fee,
                platform_fee=platform_fee,
                total_amount=total_amount,
            )

            Travel.objects.filter(pk=travel.pk).update(
                total_parcels=F('total_parcels') + 1,
                total_weight=F('total_weight') + parcel.weight,
                total_value=F('total_value') + parcel.declared_value,
                updated_at=now,
            )

            PaymentService.create_for_match(
                match,
                payment_method=payment_method or PaymentMethod.STRIPE,
                insurance_fee=insurance_fee,
            )

            superseded = Match.objects.filter(
                parcel=parcel,
                status=MatchStatus.PROPOSED,
            ).exclude(pk=match.pk).update(
                status=MatchStatus.CANCELLED,
                cancelled_at=now,
                cancellation_reason=PARCEL_MATCHED_ELSEWHERE,
                updated_at=now,
            )

            logger.info(
                f"[MATCH] Accepted {str(match.id)[:8]} | Fee: {fee} {match.currency} | "
                f"{superseded} competing proposals cancelled"
            )
            return match

        return cls._run_locked(match_id, operation)

    # ========================================
    # REJECT / CANCEL
    # ========================================

    @classmethod
    def reject(cls, match_id, reason: str = None, actor=None) -> Match:
        """Decline a proposal. No parcel or travel side effects."""

        def operation(match: Match) -> Match:
            cls._require_proposed(match)
            cls._require_party(match, actor)
            match.status = MatchStatus.REJECTED
            match.rejected_at = timezone.now()
            match.rejection_reason = reason or ''
            match.save(update_fields=['status', 'rejected_at', 'rejection_reason', 'updated_at'])
            logger.info(f"[MATCH] Rejected {str(match.id)[:8]}")
            return match

        return cls._run_locked(match_id, operation)

    @classmethod
    def cancel(cls, match_id, reason: str = None, actor=None) -> Match:
        """Withdraw a proposal. Matches are never deleted."""

        def operation(match: Match) -> Match:
            cls._require_proposed(match)
            cls._require_party(match, actor)
            match.status = MatchStatus.CANCELLED
            match.cancelled_at = timezone.now()
            match.cancellation_reason = reason or ''
            match.save(update_fields=['status', 'cancelled_at', 'cancellation_reason', 'updated_at'])
            logger.info(f"[MATCH] Cancelled {str(match.id)[:8]}")
            return match

        return cls._run_locked(match_id, operation)

    # ========================================
    # BATCH OPERATIONS
    # ========================================

    @staticmethod
    def expire_stale(now=None) -> int:
        """Expire every proposal past its deadline. Returns the count."""
        now = now or timezone.now()
        count = Match.objects.filter(
            status=MatchStatus.PROPOSED,
            expires_at__lte=now,
        ).update(
            status=MatchStatus.EXPIRED,
            expired_at=now,
            updated_at=now,
        )
        if count:
            logger.info(f"[MATCH] Sweeper expired {count} stale proposals")
        return count

    @classmethod
    def auto_propose(cls, parcel_id, filters: Optional[Dict[str, Any]] = None, finder=None) -> List[Match]:
        """
        Create proposals for the best auto-match candidates.

        Pairs that already have an active match are skipped.
        The opening fee is the suggested fee, capped to the negotiation range.
        """
        from logistics.services.matching import MatchFinder

        finder = finder or MatchFinder()
        candidates = finder.auto_match_parcel(parcel_id, filters)
        parcel = get_or_not_found(Parcel.objects.all(), parcel_id, 'Parcel')

        created = []
        for candidate in candidates:
            travel = candidate.travel
            pricing = suggest_pricing(parcel, travel)
            initial_fee = min(pricing.suggested_fee, pricing.max_fee)
            try:
                match = cls.create(
                    parcel.id,
                    travel.id,
                    parcel.sender_id,
                    travel.carrier_id,
                    initial_fee=initial_fee,
                    scorer=finder.scorer,
                )
            except (Conflict, BusinessValidationError) as e:
                logger.debug(
                    f"[MATCH] Auto-propose skipped travel {str(travel.id)[:8]}: {e}"
                )
                continue
            created.append(match)

        logger.info(
            f"[MATCH] Auto-proposed {len(created)} matches for parcel {str(parcel.id)[:8]}"
        )
        return created
