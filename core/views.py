"""
Core App Views - User Management API
"""

from rest_framework import viewsets, permissions, status
from rest_framework.decorators import action
from rest_framework.response import Response
from django.contrib.auth import get_user_model
from django.db.models import ProtectedError

from .exceptions import get_or_not_found, error_response, Conflict, DomainError
from .serializers import UserSerializer, UserCreateSerializer, PublicUserSerializer

User = get_user_model()


class IsAdminUser(permissions.BasePermission):
    """Permission for admin users only."""

    def has_permission(self, request, view):
        return request.user.is_authenticated and request.user.is_platform_admin


class UserViewSet(viewsets.ModelViewSet):
    """
    ViewSet for User model.

    - List/Destroy: Admin only
    - Create: Public (registration)
    - Update: Self only
    - Ratings: any authenticated user (public reputation)
    """

    queryset = User.objects.all()
    serializer_class = UserSerializer
    http_method_names = ['get', 'post', 'patch', 'delete', 'head', 'options']

    def get_permissions(self):
        if self.action == 'create':
            return [permissions.AllowAny()]
        elif self.action in ['list', 'destroy']:
            return [IsAdminUser()]
        return [permissions.IsAuthenticated()]

    def get_serializer_class(self):
        if self.action == 'create':
            return UserCreateSerializer
        return UserSerializer

    def get_queryset(self):
        user = self.request.user
        if user.is_authenticated and user.is_platform_admin:
            return User.objects.all()
        # Non-admin can only see their own profile
        return User.objects.filter(pk=user.pk)

    def destroy(self, request, *args, **kwargs):
        """Delete a user with no shipping history; anyone else must be deactivated instead."""
        user = self.get_object()
        try:
            user.delete()
        except ProtectedError:
            return error_response(Conflict(
                "User has parcels, travels or payments and cannot be deleted",
                hint="Deactivate the account instead",
            ))
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=False, methods=['get'])
    def me(self, request):
        """Get current user profile."""
        serializer = self.get_serializer(request.user)
        return Response(serializer.data)

    @action(detail=True, methods=['get'])
    def ratings(self, request, pk=None):
        """Public reputation of a user: summary plus the visible ratings."""
        # Imported here to keep core free of a module-level dependency on logistics
        from logistics.rating_service import RatingService
        from logistics.models import Rating
        from logistics.serializers import RatingSerializer

        try:
            user = get_or_not_found(User.objects.all(), pk, 'User')
        except DomainError as e:
            return error_response(e)

        ratings = Rating.objects.select_related('reviewer').filter(
            reviewed=user, is_public=True, is_flagged=False
        )[:50]

        return Response({
            'user': PublicUserSerializer(user).data,
            'summary': RatingService.summary(user),
            'ratings': RatingSerializer(ratings, many=True).data,
        })
