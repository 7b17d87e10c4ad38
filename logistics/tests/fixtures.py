"""
Shared builders for the logistics tests.

Defaults describe a London → Paris trip and a 2.5 kg parcel for Paris
worth 150, arriving two days before the parcel's deadline.
"""

from datetime import timedelta
from decimal import Decimal

from django.utils import timezone

from core.models import User, UserRole
from logistics.models import Parcel, Travel, ParcelStatus
from logistics.services.lifecycle import MatchLifecycle


def make_user(email, roles=None, **extra):
    return User.objects.create_user(
        email=email,
        password='testpass123',
        full_name=email.split('@')[0].title(),
        roles=roles or [UserRole.SENDER.value],
        **extra
    )


def make_carrier(email='carrier@example.com', **extra):
    return make_user(email, roles=[UserRole.CARRIER.value], **extra)


def parcel_fields(now=None, **overrides):
    now = now or timezone.now()
    fields = {
        'recipient_name': 'Claire Martin',
        'recipient_phone': '+33600000000',
        'recipient_city': 'Paris',
        'recipient_country': 'France',
        'description': 'Books',
        'length': 10,
        'width': 10,
        'height': 10,
        'weight': 2.5,
        'declared_value': Decimal('150.00'),
        'delivery_deadline': now + timedelta(days=4),
    }
    fields.update(overrides)
    return fields


def travel_fields(now=None, **overrides):
    now = now or timezone.now()
    fields = {
        'departure_city': 'London',
        'departure_country': 'United Kingdom',
        'departure_date': now + timedelta(days=1),
        'arrival_city': 'Paris',
        'arrival_country': 'France',
        'arrival_date': now + timedelta(days=2),
        'available_weight': 10,
        'available_volume': 4000,
        'base_delivery_fee': Decimal('20.00'),
    }
    fields.update(overrides)
    return fields


def make_parcel(sender, now=None, **overrides):
    return Parcel.objects.create(sender=sender, **parcel_fields(now, **overrides))


def make_travel(carrier, now=None, **overrides):
    return Travel.objects.create(carrier=carrier, **travel_fields(now, **overrides))


def make_delivered_parcel(sender, carrier, **overrides):
    """Run a parcel through proposal, acceptance, transit and delivery."""
    parcel = make_parcel(sender, **overrides)
    travel = make_travel(carrier)
    match = MatchLifecycle.create(parcel.id, travel.id, sender.id, carrier.id)
    MatchLifecycle.accept(match.id)
    parcel.refresh_from_db()
    parcel.transition_to(ParcelStatus.IN_TRANSIT)
    parcel.transition_to(ParcelStatus.DELIVERED)
    return parcel
