"""
Finance App Views - Payments & Escrow API
"""

from django.db.models import Q
from rest_framework import mixins, viewsets, status, permissions
from rest_framework.decorators import action
from rest_framework.response import Response

from core.exceptions import DomainError, Unauthorized, error_response, get_or_not_found
from logistics.models import Match
from .filters import PaymentFilter
from .models import Payment
from .serializers import (
    PaymentSerializer, PaymentCreateSerializer,
    RefundSerializer, DisputeSerializer, ResolveDisputeSerializer,
)
from .services import PaymentService


class IsAdminUser(permissions.BasePermission):
    """Permission for admin users only."""

    def has_permission(self, request, view):
        return request.user.is_authenticated and request.user.is_platform_admin


class PaymentViewSet(mixins.ListModelMixin,
                     mixins.RetrieveModelMixin,
                     viewsets.GenericViewSet):
    """
    ViewSet for escrow payments.
    Users only see payments where they are sender or carrier.

    - release: sender confirms delivery (or admin)
    - refund: carrier gives the money back (or admin)
    - dispute: either party
    - resolve: admin only
    """

    serializer_class = PaymentSerializer
    permission_classes = [permissions.IsAuthenticated]
    filterset_class = PaymentFilter
    ordering_fields = ['created_at', 'amount']

    def get_queryset(self):
        user = self.request.user
        queryset = Payment.objects.select_related('match', 'parcel')
        if user.is_platform_admin:
            return queryset
        return queryset.filter(Q(sender=user) | Q(carrier=user))

    def create(self, request):
        serializer = PaymentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            match = get_or_not_found(
                Match.objects.select_related('parcel'), data['match_id'], 'Match'
            )
            if not match.is_party(request.user.pk) and not request.user.is_platform_admin:
                raise Unauthorized("Only the sender or the carrier can pay for this match")
            payment = PaymentService.create_for_match(
                match,
                payment_method=data['payment_method'],
                insurance_fee=data.get('insurance_fee'),
            )
        except DomainError as e:
            return error_response(e)

        return Response(PaymentSerializer(payment).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['post'])
    def release(self, request, pk=None):
        """Release the escrow to the carrier after delivery."""
        payment = self.get_object()
        try:
            if payment.sender_id != request.user.pk and not request.user.is_platform_admin:
                raise Unauthorized("Only the sender can release this payment")
            payment = PaymentService.release(payment)
        except DomainError as e:
            return error_response(e)
        return Response(PaymentSerializer(payment).data)

    @action(detail=True, methods=['post'])
    def refund(self, request, pk=None):
        payment = self.get_object()
        serializer = RefundSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            if payment.carrier_id != request.user.pk and not request.user.is_platform_admin:
                raise Unauthorized("Only the carrier or an administrator can refund")
            payment = PaymentService.refund(
                payment,
                reason=serializer.validated_data['reason'],
                amount=serializer.validated_data.get('amount'),
            )
        except DomainError as e:
            return error_response(e)
        return Response(PaymentSerializer(payment).data)

    @action(detail=True, methods=['post'])
    def dispute(self, request, pk=None):
        payment = self.get_object()
        serializer = DisputeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            payment = PaymentService.open_dispute(
                payment,
                serializer.validated_data['reason'],
                serializer.validated_data['description'],
            )
        except DomainError as e:
            return error_response(e)
        return Response(PaymentSerializer(payment).data)

    @action(detail=True, methods=['post'], permission_classes=[IsAdminUser])
    def resolve(self, request, pk=None):
        payment = self.get_object()
        serializer = ResolveDisputeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            payment = PaymentService.resolve_dispute(
                payment,
                serializer.validated_data['resolution'],
                serializer.validated_data['release'],
            )
        except DomainError as e:
            return error_response(e)
        return Response(PaymentSerializer(payment).data)
