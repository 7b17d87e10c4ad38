"""
LOGISTICS App - Celery Tasks

Periodic expiry of stale proposals and background auto-matching.
"""

from celery import shared_task
import logging

from core.exceptions import DomainError

logger = logging.getLogger(__name__)


@shared_task(name='logistics.tasks.expire_stale_matches')
def expire_stale_matches():
    """
    Mark proposed matches past their deadline as expired.

    Runs every 10 minutes (CELERY_BEAT_SCHEDULE). Reads already expire
    matches lazily; this only tidies the ones nobody touched.
    """
    from logistics.services.lifecycle import MatchLifecycle
    expired = MatchLifecycle.expire_stale()
    logger.info(f"[MATCH TASK] Expired {expired} stale proposals")
    return expired


@shared_task(name='logistics.tasks.auto_propose_for_parcel')
def auto_propose_for_parcel(parcel_id, filters=None):
    """
    Create proposals for a new parcel's best candidate travels.

    Queued on parcel creation when MATCHING_AUTO_PROPOSE_ON_CREATE is set.
    """
    from logistics.services.lifecycle import MatchLifecycle
    try:
        matches = MatchLifecycle.auto_propose(parcel_id, filters)
    except DomainError as e:
        logger.warning(f"[MATCH TASK] Auto-propose for parcel {parcel_id} skipped: {e}")
        return []
    return [str(match.id) for match in matches]
