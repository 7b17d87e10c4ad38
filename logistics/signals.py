"""
LOGISTICS App - Django Signals

Queue auto-matching for newly created parcels.
"""

import logging
from django.conf import settings
from django.db import transaction
from django.db.models.signals import post_save
from django.dispatch import receiver

from logistics.models import Parcel, ParcelStatus

logger = logging.getLogger(__name__)


@receiver(post_save, sender=Parcel)
def on_parcel_created(sender, instance, created, **kwargs):
    """
    On creation of a pending parcel, queue auto-propose once the
    surrounding transaction has committed.
    """
    if not created or instance.status != ParcelStatus.PENDING:
        return
    if not settings.MATCHING_AUTO_PROPOSE_ON_CREATE:
        return

    from logistics.tasks import auto_propose_for_parcel

    parcel_id = str(instance.id)
    logger.info(f"[SIGNAL] New parcel {parcel_id[:8]} queued for auto-matching")
    transaction.on_commit(lambda: auto_propose_for_parcel.delay(parcel_id))
