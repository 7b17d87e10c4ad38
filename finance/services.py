"""
FINANCE App - Escrow Services for PARCELFLYTE

Payment creation for accepted matches and the escrow state machine:

    funded ──release──▶ released
      │  └──refund───▶ refunded
      └──dispute──▶ disputed ──resolve──▶ released | refunded
                        └──────refund───▶ refunded
"""

import logging
from decimal import Decimal
from django.conf import settings
from django.db import transaction
from django.utils import timezone

from core.exceptions import Conflict, InvalidState, BusinessValidationError
from finance.models import (
    Payment, PaymentMethod, PaymentStatus, EscrowStatus,
    DisputeReason, DisputeStatus,
)
from logistics.models import MatchStatus, ParcelStatus, ParcelPaymentStatus
from logistics.services.scoring import money

logger = logging.getLogger(__name__)


def platform_fee_for(delivery_fee) -> Decimal:
    """Platform commission on a delivery fee (PLATFORM_FEE_PERCENT)."""
    rate = Decimal(settings.PLATFORM_FEE_PERCENT) / Decimal('100')
    return money(Decimal(str(delivery_fee)) * rate)


class PaymentService:
    """
    Escrow operations. Every transition locks the payment row.

    Usage:
        payment = PaymentService.create_for_match(match)
        PaymentService.release(payment)
    """

    @staticmethod
    def _lock(payment: Payment) -> Payment:
        return Payment.objects.select_for_update().select_related('parcel').get(pk=payment.pk)

    @staticmethod
    def _set_parcel_payment_status(parcel, payment_status: str):
        parcel.payment_status = payment_status
        parcel.save(update_fields=['payment_status', 'updated_at'])

    @classmethod
    @transaction.atomic
    def create_for_match(
        cls,
        match,
        payment_method: str = PaymentMethod.STRIPE,
        insurance_fee=None
    ) -> Payment:
        """
        Create the escrow payment for an accepted match.

        Args:
            match: Match instance in ACCEPTED status
            payment_method: PaymentMethod value
            insurance_fee: optional insurance premium added to the amount

        Returns:
            Payment instance (escrow funded)

        Raises:
            InvalidState: If the match is not accepted
            Conflict: If the match already has a payment
        """
        if match.status != MatchStatus.ACCEPTED:
            raise InvalidState("Match must be accepted before creating payment")

        if Payment.objects.filter(match=match).exists():
            raise Conflict("Payment already exists for this match")

        if payment_method not in PaymentMethod.values:
            raise BusinessValidationError(f"Unknown payment method: {payment_method}")

        delivery_fee = money(match.final_fee if match.final_fee is not None else match.initial_fee)
        platform_fee = platform_fee_for(delivery_fee)
        insurance = money(insurance_fee or 0)
        if insurance < 0:
            raise BusinessValidationError("Insurance fee cannot be negative")

        payment = Payment.objects.create(
            match=match,
            parcel_id=match.parcel_id,
            sender_id=match.sender_id,
            carrier_id=match.carrier_id,
            delivery_fee=delivery_fee,
            platform_fee=platform_fee,
            insurance_fee=insurance,
            amount=delivery_fee + platform_fee + insurance,
            currency=match.currency,
            payment_method=payment_method,
            status=PaymentStatus.PENDING,
            escrow_status=EscrowStatus.FUNDED,
        )

        cls._set_parcel_payment_status(match.parcel, ParcelPaymentStatus.PAID)

        logger.info(
            f"[ESCROW] Payment {payment.payment_id} funded for match {str(match.id)[:8]} | "
            f"Amount: {payment.amount} {payment.currency}"
        )
        return payment

    @classmethod
    @transaction.atomic
    def release(cls, payment: Payment) -> Payment:
        """Pay the carrier once the parcel is delivered."""
        payment = cls._lock(payment)

        if payment.escrow_status != EscrowStatus.FUNDED:
            raise InvalidState(f"Cannot release escrow in status {payment.escrow_status}")
        if payment.parcel.status != ParcelStatus.DELIVERED:
            raise InvalidState("Escrow can only be released after delivery")

        payment.escrow_status = EscrowStatus.RELEASED
        payment.status = PaymentStatus.COMPLETED
        payment.released_at = timezone.now()
        payment.save(update_fields=['escrow_status', 'status', 'released_at', 'updated_at'])

        cls._set_parcel_payment_status(payment.parcel, ParcelPaymentStatus.RELEASED)

        logger.info(f"[ESCROW] Payment {payment.payment_id} released to carrier")
        return payment

    @classmethod
    @transaction.atomic
    def refund(cls, payment: Payment, reason: str = '', amount=None) -> Payment:
        """Return the funds to the sender (full amount by default)."""
        payment = cls._lock(payment)

        if payment.escrow_status not in (EscrowStatus.FUNDED, EscrowStatus.DISPUTED):
            raise InvalidState(f"Cannot refund escrow in status {payment.escrow_status}")

        refund_amount = payment.amount if amount is None else money(amount)
        if refund_amount <= 0 or refund_amount > payment.amount:
            raise BusinessValidationError(
                f"Refund amount must be between 0 and {payment.amount}"
            )

        payment.escrow_status = EscrowStatus.REFUNDED
        payment.status = PaymentStatus.REFUNDED
        payment.refund_amount = refund_amount
        payment.refund_reason = reason or ''
        payment.refunded_at = timezone.now()
        update_fields = [
            'escrow_status', 'status', 'refund_amount', 'refund_reason',
            'refunded_at', 'updated_at'
        ]
        if payment.dispute_status in (DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW):
            payment.dispute_status = DisputeStatus.CLOSED
            update_fields.append('dispute_status')
        payment.save(update_fields=update_fields)

        cls._set_parcel_payment_status(payment.parcel, ParcelPaymentStatus.REFUNDED)

        logger.info(
            f"[ESCROW] Payment {payment.payment_id} refunded ({refund_amount} {payment.currency})"
        )
        return payment

    @classmethod
    @transaction.atomic
    def open_dispute(cls, payment: Payment, reason: str, description: str = '') -> Payment:
        """Freeze a funded escrow until an administrator resolves it."""
        if reason not in DisputeReason.values:
            raise BusinessValidationError(f"Unknown dispute reason: {reason}")

        payment = cls._lock(payment)
        if payment.escrow_status != EscrowStatus.FUNDED:
            raise InvalidState(f"Cannot dispute escrow in status {payment.escrow_status}")

        payment.escrow_status = EscrowStatus.DISPUTED
        payment.status = PaymentStatus.DISPUTED
        payment.dispute_reason = reason
        payment.dispute_description = description or ''
        payment.dispute_status = DisputeStatus.OPEN
        payment.save(update_fields=[
            'escrow_status', 'status', 'dispute_reason', 'dispute_description',
            'dispute_status', 'updated_at'
        ])

        logger.warning(f"[ESCROW] Dispute opened on {payment.payment_id}: {reason}")
        return payment

    @classmethod
    @transaction.atomic
    def resolve_dispute(cls, payment: Payment, resolution: str, release: bool) -> Payment:
        """
        Close a dispute, either paying the carrier or refunding the sender.

        Args:
            payment: Payment in DISPUTED escrow
            resolution: free-text outcome recorded on the payment
            release: True pays the carrier, False refunds the sender
        """
        payment = cls._lock(payment)
        if not payment.is_disputed:
            raise InvalidState("Payment has no open dispute")

        now = timezone.now()
        payment.dispute_status = DisputeStatus.RESOLVED
        payment.dispute_resolution = resolution or ''
        payment.dispute_resolved_at = now

        if release:
            payment.escrow_status = EscrowStatus.RELEASED
            payment.status = PaymentStatus.COMPLETED
            payment.released_at = now
            parcel_status = ParcelPaymentStatus.RELEASED
        else:
            payment.escrow_status = EscrowStatus.REFUNDED
            payment.status = PaymentStatus.REFUNDED
            payment.refund_amount = payment.amount
            payment.refund_reason = resolution or ''
            payment.refunded_at = now
            parcel_status = ParcelPaymentStatus.REFUNDED

        payment.save()
        cls._set_parcel_payment_status(payment.parcel, parcel_status)

        logger.info(
            f"[ESCROW] Dispute on {payment.payment_id} resolved | "
            f"{'released' if release else 'refunded'}"
        )
        return payment
