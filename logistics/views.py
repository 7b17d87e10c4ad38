"""
Logistics App Views - Parcels, Travels, Matching, Matches & Ratings API
"""

import logging
from django.db.models import Q
from rest_framework import mixins, viewsets, status, permissions
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import DomainError, NotFound, Unauthorized, error_response, get_or_not_found
from core.models import UserRole
from .filters import ParcelFilter, TravelFilter, MatchFilter, RatingFilter
from .models import Parcel, Travel, Match, Rating, ParcelStatus, DETAILED_RATING_FIELDS
from .rating_service import RatingService
from .serializers import (
    ParcelSerializer, ParcelStatusSerializer, TravelSerializer,
    MatchSerializer, MatchCreateSerializer, NegotiateSerializer,
    NegotiationEntrySerializer, AcceptSerializer, ReasonSerializer,
    MatchingQuerySerializer, AutoMatchRequestSerializer,
    RatingSerializer, RatingCreateSerializer,
)
from .services.lifecycle import MatchLifecycle
from .services.matching import MatchFinder

logger = logging.getLogger(__name__)


class IsCarrier(permissions.BasePermission):
    """Permission for carrier users only."""

    def has_permission(self, request, view):
        return request.user.is_authenticated and (
            request.user.has_role(UserRole.CARRIER) or request.user.is_platform_admin
        )


class IsPlatformAdmin(permissions.BasePermission):
    """Permission for admin users only."""

    def has_permission(self, request, view):
        return request.user.is_authenticated and request.user.is_platform_admin


# ============================================
# PARCELS
# ============================================

class ParcelViewSet(mixins.CreateModelMixin,
                    mixins.ListModelMixin,
                    mixins.RetrieveModelMixin,
                    viewsets.GenericViewSet):
    """
    Sender parcels.

    - List/Retrieve: own parcels (sent or carried); admins see all
    - Create: any authenticated user, becomes the sender
    - POST {id}/status/: forward-only status change
    """

    serializer_class = ParcelSerializer
    permission_classes = [permissions.IsAuthenticated]
    filterset_class = ParcelFilter
    ordering_fields = ['created_at', 'delivery_deadline', 'declared_value']

    def get_queryset(self):
        user = self.request.user
        queryset = Parcel.objects.select_related('sender')
        if user.is_platform_admin:
            return queryset
        return queryset.filter(Q(sender=user) | Q(matched_carrier=user))

    def perform_create(self, serializer):
        parcel = serializer.save(sender=self.request.user)
        logger.info(f"[PARCEL] Created {str(parcel.id)[:8]} by {self.request.user.email}")

    @action(detail=True, methods=['post'], url_path='status')
    def update_status(self, request, pk=None):
        """Advance the parcel (sender may cancel, carrier moves it along)."""
        parcel = self.get_object()
        serializer = ParcelStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        new_status = serializer.validated_data['status']

        user = request.user
        is_sender = parcel.sender_id == user.pk
        is_carrier = parcel.matched_carrier_id == user.pk
        allowed = (
            user.is_platform_admin
            or (is_sender and new_status == ParcelStatus.CANCELLED)
            or (is_carrier and new_status != ParcelStatus.MATCHED)
        )

        try:
            if not allowed:
                raise Unauthorized("You cannot set this status on the parcel")
            parcel.transition_to(new_status)
        except DomainError as e:
            return error_response(e)

        return Response(ParcelSerializer(parcel).data)


# ============================================
# TRAVELS
# ============================================

class TravelViewSet(mixins.CreateModelMixin,
                    mixins.ListModelMixin,
                    mixins.RetrieveModelMixin,
                    viewsets.GenericViewSet):
    """
    Carrier travels. Listing is open to every authenticated user.
    """

    queryset = Travel.objects.select_related('carrier')
    serializer_class = TravelSerializer
    filterset_class = TravelFilter
    ordering_fields = ['departure_date', 'base_delivery_fee', 'created_at']

    def get_permissions(self):
        if self.action == 'create':
            return [IsCarrier()]
        return [permissions.IsAuthenticated()]

    def perform_create(self, serializer):
        travel = serializer.save(carrier=self.request.user)
        logger.info(
            f"[TRAVEL] {travel.departure_city} → {travel.arrival_city} "
            f"announced by {self.request.user.email}"
        )


# ============================================
# MATCHING ENGINE
# ============================================

class MatchingView(APIView):
    """
    GET /api/matching/?parcel_id=...  → ranked candidate travels
    GET /api/matching/                → free search across open travels
    """

    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        query = MatchingQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        data = query.validated_data

        if data.get('parcel_id'):
            try:
                candidates = MatchFinder().find_matches_for_parcel(
                    data['parcel_id'], query.candidate_filters()
                )
            except DomainError as e:
                return error_response(e)

            return Response({
                'parcel_id': str(data['parcel_id']),
                'count': len(candidates),
                'matches': [candidate.to_dict() for candidate in candidates],
            })

        page, limit = data['page'], data['limit']
        queryset = MatchFinder.available_travels(data)
        total = queryset.count()
        offset = (page - 1) * limit
        travels = list(queryset[offset:offset + limit])
        return Response({
            'travels': [
                {**TravelSerializer(travel).data, 'estimated_delivery_fee': float(travel.base_delivery_fee)}
                for travel in travels
            ],
            'pagination': {
                'page': page,
                'limit': limit,
                'count': len(travels),
                'total': total,
                'pages': (total + limit - 1) // limit,
            },
        })


class AutoMatchView(APIView):
    """
    GET  /api/matching/auto/?parcel_id=...  → high-quality suggestions (read only)
    POST /api/matching/auto/                → create proposals for them
    """

    permission_classes = [permissions.IsAuthenticated]

    @staticmethod
    def _check_owner(request, parcel_id):
        parcel = get_or_not_found(Parcel.objects.all(), parcel_id, 'Parcel')
        if parcel.sender_id != request.user.pk and not request.user.is_platform_admin:
            raise Unauthorized("Only the sender can auto-match this parcel")
        return parcel

    def get(self, request):
        query = MatchingQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        parcel_id = query.validated_data.get('parcel_id')
        if not parcel_id:
            return Response({'error': 'parcel_id is required'}, status=status.HTTP_400_BAD_REQUEST)

        try:
            self._check_owner(request, parcel_id)
            suggestions = MatchFinder().auto_match_parcel(parcel_id, query.candidate_filters())
        except DomainError as e:
            return error_response(e)

        return Response({
            'parcel_id': str(parcel_id),
            'count': len(suggestions),
            'suggestions': [candidate.to_dict() for candidate in suggestions],
        })

    def post(self, request):
        serializer = AutoMatchRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        parcel_id = serializer.validated_data['parcel_id']
        criteria = serializer.validated_data.get('criteria') or {}
        filters = {
            key: criteria[key]
            for key in MatchingQuerySerializer.FILTER_FIELDS
            if key in criteria
        }

        try:
            self._check_owner(request, parcel_id)
            matches = MatchLifecycle.auto_propose(parcel_id, filters)
        except DomainError as e:
            return error_response(e)

        return Response({
            'parcel_id': str(parcel_id),
            'count': len(matches),
            'matches': MatchSerializer(matches, many=True).data,
        }, status=status.HTTP_201_CREATED)


# ============================================
# MATCHES
# ============================================

class MatchViewSet(mixins.ListModelMixin, viewsets.GenericViewSet):
    """
    Match lifecycle endpoints.

    Only the sender and the carrier of a match (or an admin) can see it.
    Matches are never deleted: DELETE cancels the proposal.
    """

    serializer_class = MatchSerializer
    permission_classes = [permissions.IsAuthenticated]
    filterset_class = MatchFilter
    ordering_fields = ['created_at', 'match_score', 'expires_at']

    def get_queryset(self):
        user = self.request.user
        queryset = Match.objects.select_related(
            'sender', 'carrier'
        ).prefetch_related('negotiation_history')
        if user.is_platform_admin:
            return queryset
        return queryset.filter(Q(sender=user) | Q(carrier=user))

    def _ensure_visible(self, pk):
        if not self.get_queryset().filter(pk=pk).exists():
            raise NotFound(f"Match {pk} not found")

    def create(self, request):
        serializer = MatchCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            parcel = get_or_not_found(Parcel.objects.all(), data['parcel_id'], 'Parcel')
            travel = get_or_not_found(Travel.objects.all(), data['travel_id'], 'Travel')
            user = request.user
            if user.pk not in (parcel.sender_id, travel.carrier_id) and not user.is_platform_admin:
                raise Unauthorized("Only the sender or the carrier can propose this match")

            match = MatchLifecycle.create(
                parcel.id,
                travel.id,
                data.get('sender_id') or parcel.sender_id,
                data.get('carrier_id') or travel.carrier_id,
                initial_fee=data.get('initial_fee'),
                agreement=data.get('agreement'),
            )
        except DomainError as e:
            return error_response(e)

        return Response(MatchSerializer(match).data, status=status.HTTP_201_CREATED)

    def retrieve(self, request, pk=None):
        try:
            self._ensure_visible(pk)
            match = MatchLifecycle.get(pk)
        except DomainError as e:
            return error_response(e)
        return Response(MatchSerializer(match).data)

    def destroy(self, request, pk=None):
        return self.cancel(request, pk)

    @action(detail=True, methods=['get', 'post'])
    def negotiate(self, request, pk=None):
        """GET: negotiation history. POST {fee, message}: counter-offer."""
        try:
            self._ensure_visible(pk)
            if request.method == 'GET':
                match = MatchLifecycle.get(pk)
                return Response({
                    'match_id': str(match.id),
                    'status': match.status,
                    'initial_fee': match.initial_fee,
                    'proposed_fee': match.proposed_fee,
                    'history': NegotiationEntrySerializer(
                        match.negotiation_history.all(), many=True
                    ).data,
                })

            serializer = NegotiateSerializer(data=request.data)
            serializer.is_valid(raise_exception=True)
            entry = MatchLifecycle.negotiate(
                pk,
                request.user.pk,
                serializer.validated_data['fee'],
                serializer.validated_data['message'],
            )
        except DomainError as e:
            return error_response(e)

        return Response(NegotiationEntrySerializer(entry).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['post'])
    def accept(self, request, pk=None):
        serializer = AcceptSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            self._ensure_visible(pk)
            match = MatchLifecycle.accept(
                pk,
                final_fee=data.get('final_fee'),
                agreement=data.get('agreement'),
                actor=request.user,
                payment_method=data.get('payment_method'),
                insurance_fee=data.get('insurance_fee'),
            )
        except DomainError as e:
            return error_response(e)

        return Response({
            'message': 'Match accepted successfully',
            'match': MatchSerializer(match).data,
            'payment_id': match.payment.payment_id,
        })

    @action(detail=True, methods=['post'])
    def reject(self, request, pk=None):
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            self._ensure_visible(pk)
            match = MatchLifecycle.reject(
                pk, serializer.validated_data['reason'], actor=request.user
            )
        except DomainError as e:
            return error_response(e)

        return Response(MatchSerializer(match).data)

    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            self._ensure_visible(pk)
            match = MatchLifecycle.cancel(
                pk, serializer.validated_data['reason'], actor=request.user
            )
        except DomainError as e:
            return error_response(e)

        return Response(MatchSerializer(match).data)


# ============================================
# RATINGS
# ============================================

class RatingViewSet(mixins.ListModelMixin, viewsets.GenericViewSet):
    """Public ratings; submission goes through RatingService."""

    serializer_class = RatingSerializer
    permission_classes = [permissions.IsAuthenticated]
    filterset_class = RatingFilter

    def get_queryset(self):
        return Rating.objects.select_related('reviewer').filter(
            is_public=True, is_flagged=False
        )

    def create(self, request):
        serializer = RatingCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)

        detailed = {
            field: data.pop(field)
            for field in DETAILED_RATING_FIELDS
            if field in data
        }

        try:
            rating = RatingService.submit(
                data.pop('parcel_id'),
                request.user.pk,
                data.pop('overall_rating'),
                reviewed_id=data.get('reviewed_id'),
                rating_type=data.get('rating_type'),
                content=data.get('content', ''),
                title=data.get('title', ''),
                detailed=detailed,
                is_public=data.get('is_public', True),
            )
        except DomainError as e:
            return error_response(e)

        return Response(RatingSerializer(rating).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['post'], permission_classes=[IsPlatformAdmin])
    def flag(self, request, pk=None):
        """Hide an abusive rating and drop it from the reviewed user's average (Admin only)."""
        try:
            rating = RatingService.flag(pk)
        except DomainError as e:
            return error_response(e)
        return Response(RatingSerializer(rating).data)
