"""
PARCELFLYTE Main URL Configuration
"""

from django.urls import path, include
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from core import health


@api_view(['GET'])
@permission_classes([AllowAny])
def api_root(request):
    """API Root endpoint with available routes."""
    return Response({
        'name': 'PARCELFLYTE API',
        'version': '1.0.0',
        'endpoints': {
            'auth': {
                'token': '/api/auth/token/',
                'refresh': '/api/auth/token/refresh/',
            },
            'users': '/api/users/',
            'parcels': '/api/parcels/',
            'travels': '/api/travels/',
            'matching': {
                'search': '/api/matching/',
                'auto': '/api/matching/auto/',
            },
            'matches': '/api/matches/',
            'ratings': '/api/ratings/',
            'payments': '/api/payments/',
            'docs': '/api/docs/',
        }
    })


urlpatterns = [
    # Health checks
    path('health/', health.health_check, name='health'),
    path('health/ready/', health.readiness_check, name='health-ready'),
    path('health/detailed/', health.detailed_health, name='health-detailed'),

    # API Root
    path('api/', api_root, name='api-root'),

    # API Documentation
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/docs/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),

    # App URLs
    path('api/', include('core.urls')),
    path('api/', include('logistics.urls')),
    path('api/', include('finance.urls')),
]
