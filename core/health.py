"""
PARCELFLYTE Monitoring & Health Check Endpoints
===============================================

Provides:
1. /health/ - Basic liveness check (for load balancers/Docker)
2. /health/ready/ - Readiness check (DB, Redis, Celery status)
3. /health/detailed/ - Marketplace counters (admin only)
"""

import time
import logging
from django.http import JsonResponse
from django.db import connection, DatabaseError
from django.core.cache import cache
from django.views.decorators.http import require_GET
from django.views.decorators.csrf import csrf_exempt
from django.utils import timezone

logger = logging.getLogger('parcelflyte.monitoring')


@csrf_exempt
@require_GET
def health_check(request):
    """
    Basic liveness probe.
    Returns 200 if the Django process is alive.
    """
    return JsonResponse({
        'status': 'ok',
        'service': 'parcelflyte',
        'timestamp': timezone.now().isoformat(),
    })


@csrf_exempt
@require_GET
def readiness_check(request):
    """
    Readiness probe - checks all critical dependencies.
    Returns 200 only if the database and cache are healthy.
    Celery being down is reported as degraded, not critical.
    """
    checks = {}
    all_healthy = True

    # 1. Database Check
    try:
        start = time.time()
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        checks['database'] = {
            'status': 'healthy',
            'response_time_ms': round((time.time() - start) * 1000, 2),
            'engine': connection.vendor,
        }
    except DatabaseError as e:
        checks['database'] = {'status': 'unhealthy', 'error': str(e)}
        all_healthy = False
        logger.error(f"[HEALTH] Database unhealthy: {e}")

    # 2. Redis/Cache Check
    try:
        start = time.time()
        cache.set('_healthcheck_ping', 'pong', 10)
        if cache.get('_healthcheck_ping') != 'pong':
            raise RuntimeError("Cache read/write mismatch")
        checks['redis'] = {
            'status': 'healthy',
            'response_time_ms': round((time.time() - start) * 1000, 2),
        }
    except Exception as e:
        checks['redis'] = {'status': 'unhealthy', 'error': str(e)}
        all_healthy = False
        logger.error(f"[HEALTH] Cache unhealthy: {e}")

    # 3. Celery Check (via inspect ping)
    try:
        from parcelflyte_core.celery import app as celery_app
        start = time.time()
        ping_result = celery_app.control.inspect(timeout=3.0).ping()
        celery_time = round((time.time() - start) * 1000, 2)

        if ping_result:
            checks['celery'] = {
                'status': 'healthy',
                'workers': len(ping_result),
                'response_time_ms': celery_time,
            }
        else:
            checks['celery'] = {
                'status': 'degraded',
                'error': 'No workers responding',
                'response_time_ms': celery_time,
            }
            logger.warning("[HEALTH] No Celery workers responding")
    except Exception as e:
        checks['celery'] = {'status': 'unhealthy', 'error': str(e)}
        logger.error(f"[HEALTH] Celery unhealthy: {e}")

    return JsonResponse({
        'status': 'healthy' if all_healthy else 'unhealthy',
        'service': 'parcelflyte',
        'timestamp': timezone.now().isoformat(),
        'checks': checks,
    }, status=200 if all_healthy else 503)


@csrf_exempt
@require_GET
def detailed_health(request):
    """
    Marketplace counters for operators.
    Requires a staff session.
    """
    if not request.user.is_authenticated or not request.user.is_staff:
        return JsonResponse({
            'error': 'Unauthorized',
            'message': 'Staff access required for detailed diagnostics',
        }, status=403)

    from core.models import User
    from logistics.models import Parcel, ParcelStatus, Travel, Match, MatchStatus, OPEN_TRAVEL_STATUSES
    from finance.models import Payment, EscrowStatus

    stats = {
        'users': {
            'total': User.objects.count(),
            'verified': User.objects.filter(is_verified=True).count(),
        },
        'parcels': {
            'total': Parcel.objects.count(),
            'pending': Parcel.objects.filter(status=ParcelStatus.PENDING).count(),
            'in_transit': Parcel.objects.filter(status=ParcelStatus.IN_TRANSIT).count(),
            'delivered_today': Parcel.objects.filter(
                status=ParcelStatus.DELIVERED,
                delivered_at__date=timezone.now().date()
            ).count(),
        },
        'travels': {
            'open': Travel.objects.filter(status__in=OPEN_TRAVEL_STATUSES).count(),
        },
        'matches': {
            'proposed': Match.objects.filter(status=MatchStatus.PROPOSED).count(),
            'accepted': Match.objects.filter(status=MatchStatus.ACCEPTED).count(),
        },
        'escrow': {
            'funded': Payment.objects.filter(escrow_status=EscrowStatus.FUNDED).count(),
        },
    }

    return JsonResponse({
        'status': 'ok',
        'service': 'parcelflyte',
        'timestamp': timezone.now().isoformat(),
        'stats': stats,
    })
