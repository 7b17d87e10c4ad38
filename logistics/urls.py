"""
Logistics App URLs
"""

from django.urls import path, include
from rest_framework.routers import DefaultRouter

from .views import (
    ParcelViewSet, TravelViewSet, MatchViewSet, RatingViewSet,
    MatchingView, AutoMatchView,
)

router = DefaultRouter()
router.register(r'parcels', ParcelViewSet, basename='parcel')
router.register(r'travels', TravelViewSet, basename='travel')
router.register(r'matches', MatchViewSet, basename='match')
router.register(r'ratings', RatingViewSet, basename='rating')

urlpatterns = [
    # Matching engine
    path('matching/', MatchingView.as_view(), name='matching'),
    path('matching/auto/', AutoMatchView.as_view(), name='matching-auto'),

    # Router URLs
    path('', include(router.urls)),
]
