"""
LOGISTICS App - Match Scoring for PARCELFLYTE

Deterministic compatibility score between a parcel and a travel.
No database access: every input is already loaded by the caller.

SCORING FACTORS (weights from settings.MATCHING_SCORE_WEIGHTS):
  1. Route     (35%) : Recipient city/country vs. travel endpoints
  2. Capacity  (25%) : How well the parcel uses the spare capacity
  3. Timing    (20%) : Buffer between arrival and delivery deadline
  4. Price     (10%) : Base fee relative to the declared value
  5. Rating    (10%) : Carrier reputation and review volume

The total is expressed on a 0-100 scale.
"""

import math
from dataclasses import dataclass, asdict, fields
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured


CENTS = Decimal('0.01')
SECONDS_PER_DAY = 24 * 60 * 60

# Sub-score at or above which a factor is reported as a match reason
REASON_THRESHOLD = 0.8


def money(value) -> Decimal:
    """Round any numeric value to cents."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def max_fee_ratio() -> Decimal:
    return Decimal(str(settings.MATCHING_MAX_FEE_RATIO))


def max_acceptable_fee(declared_value) -> Decimal:
    """Highest fee the platform allows for a parcel of this value."""
    return Decimal(str(declared_value)) * max_fee_ratio()


# ============================================
# CONFIGURATION & RESULT DATA CLASSES
# ============================================

@dataclass(frozen=True)
class ScoringWeights:
    """Relative importance of each factor. Must sum to 1.0."""
    route: float = 0.35
    capacity: float = 0.25
    timing: float = 0.20
    price: float = 0.10
    rating: float = 0.10

    def __post_init__(self):
        values = [getattr(self, f.name) for f in fields(self)]
        if any(value < 0 for value in values):
            raise ImproperlyConfigured("Scoring weights cannot be negative")
        if not math.isclose(sum(values), 1.0, abs_tol=1e-6):
            raise ImproperlyConfigured(
                f"Scoring weights must sum to 1.0 (got {sum(values):.4f})"
            )

    @classmethod
    def from_settings(cls) -> 'ScoringWeights':
        configured = getattr(settings, 'MATCHING_SCORE_WEIGHTS', None) or {}
        unknown = set(configured) - {f.name for f in fields(cls)}
        if unknown:
            raise ImproperlyConfigured(
                f"Unknown scoring weights: {', '.join(sorted(unknown))}"
            )
        return cls(**{key: float(value) for key, value in configured.items()})


@dataclass
class ScoreBreakdown:
    """Scorer output: total on 0-100 plus each sub-score on 0-1."""
    total: float
    route_score: float
    capacity_score: float
    timing_score: float
    price_score: float
    rating_score: float

    def sub_scores(self) -> Dict[str, float]:
        return {
            'route': self.route_score,
            'capacity': self.capacity_score,
            'timing': self.timing_score,
            'price': self.price_score,
            'rating': self.rating_score,
        }

    def to_dict(self) -> Dict[str, float]:
        return {key: round(value, 4) for key, value in asdict(self).items()}


@dataclass
class PricingSuggestion:
    """Negotiation range derived from the travel's base fee."""
    suggested_fee: Decimal
    min_fee: Decimal
    max_fee: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'suggested_fee': float(self.suggested_fee),
            'min_fee': float(self.min_fee),
            'max_fee': float(self.max_fee),
            'negotiation_range': {
                'min': float(self.min_fee),
                'max': float(self.max_fee),
            },
        }


# ============================================
# MATCH SCORER
# ============================================

class MatchScorer:
    """
    Pure compatibility scorer.

    Usage:
        scorer = MatchScorer()
        breakdown = scorer.score(parcel, travel, carrier)
    """

    def __init__(self, weights: ScoringWeights = None):
        self.weights = weights or ScoringWeights.from_settings()

    def score(self, parcel, travel, carrier=None) -> ScoreBreakdown:
        route = self.route_score(parcel, travel)
        capacity = self.capacity_score(parcel, travel)
        timing = self.timing_score(parcel, travel)
        price = self.price_score(parcel, travel)
        rating = self.rating_score(carrier)

        weighted = (
            route * self.weights.route
            + capacity * self.weights.capacity
            + timing * self.weights.timing
            + price * self.weights.price
            + rating * self.weights.rating
        )
        total = min(max(round(weighted * 100, 2), 0.0), 100.0)

        return ScoreBreakdown(
            total=total,
            route_score=route,
            capacity_score=capacity,
            timing_score=timing,
            price_score=price,
            rating_score=rating,
        )

    @staticmethod
    def route_score(parcel, travel) -> float:
        city = parcel.recipient_city
        country = parcel.recipient_country
        score = 0.0

        departure_city_match = bool(city) and city == travel.departure_city
        arrival_city_match = bool(city) and city == travel.arrival_city

        if departure_city_match:
            score += 0.5
        if arrival_city_match:
            score += 0.5

        # Country-level proximity only counts when the city did not match
        if country and country == travel.departure_country and not departure_city_match:
            score += 0.25
        if country and country == travel.arrival_country and not arrival_city_match:
            score += 0.25

        return min(score, 1.0)

    @staticmethod
    def _utilisation(required, available) -> float:
        if not available or available <= 0:
            return 1.0
        ratio = min(float(required) / float(available), 1.0)
        return 1.0 if ratio > 0.8 else ratio

    @classmethod
    def capacity_score(cls, parcel, travel) -> float:
        weight_score = cls._utilisation(parcel.weight, travel.available_weight)
        volume_score = cls._utilisation(parcel.volume, travel.available_volume)
        return (weight_score + volume_score) / 2

    @staticmethod
    def timing_score(parcel, travel) -> float:
        deadline = parcel.delivery_deadline
        if deadline is None:
            return 0.8
        if travel.arrival_date > deadline:
            return 0.0

        buffer_days = (deadline - travel.arrival_date).total_seconds() / SECONDS_PER_DAY
        if 1 <= buffer_days <= 7:
            return 1.0
        if buffer_days > 7:
            return 0.8
        return 0.5

    @staticmethod
    def price_score(parcel, travel) -> float:
        fee = Decimal(str(travel.base_delivery_fee))
        value = Decimal(str(parcel.declared_value))
        if value <= 0 or fee > max_acceptable_fee(value):
            return 0.0
        return max(0.5, 1 - float(fee / value))

    @staticmethod
    def rating_score(carrier) -> float:
        if carrier is None or not carrier.total_reviews:
            return 0.5

        score = float(carrier.average_rating or 0) / 5
        if carrier.total_reviews >= 10:
            score += 0.10
        elif carrier.total_reviews >= 5:
            score += 0.05
        return min(score, 1.0)


# ============================================
# EXPLANATION & PRICING HELPERS
# ============================================

def match_details(parcel, travel, carrier=None) -> Dict[str, Any]:
    """Human-readable explanation of a parcel/travel pairing."""
    deadline = parcel.delivery_deadline
    buffer_days: Optional[int] = None
    if deadline is not None:
        buffer_days = math.floor(
            (deadline - travel.arrival_date).total_seconds() / SECONDS_PER_DAY
        )

    cap = max_acceptable_fee(parcel.declared_value)
    completed = carrier.completed_deliveries if carrier else 0
    successful = carrier.successful_deliveries if carrier else 0

    return {
        'route_match': {
            'departure': (
                parcel.recipient_city == travel.departure_city
                and parcel.recipient_country == travel.departure_country
            ),
            'arrival': (
                parcel.recipient_city == travel.arrival_city
                and parcel.recipient_country == travel.arrival_country
            ),
            'departure_city': travel.departure_city,
            'arrival_city': travel.arrival_city,
        },
        'capacity_match': {
            'weight': travel.available_weight >= parcel.weight,
            'volume': travel.available_volume >= (parcel.volume or 0),
            'available_weight': travel.available_weight,
            'required_weight': parcel.weight,
            'available_volume': travel.available_volume,
            'required_volume': parcel.volume,
        },
        'timing_match': {
            'can_meet_deadline': deadline is None or travel.arrival_date <= deadline,
            'travel_arrival': travel.arrival_date.isoformat(),
            'delivery_deadline': deadline.isoformat() if deadline else None,
            'buffer_days': buffer_days,
        },
        'price_match': {
            'base_fee': float(travel.base_delivery_fee),
            'max_acceptable_fee': float(money(cap)),
            'is_affordable': Decimal(str(travel.base_delivery_fee)) <= cap,
        },
        'carrier_info': {
            'rating': float(carrier.average_rating) if carrier else 0.0,
            'total_reviews': carrier.total_reviews if carrier else 0,
            'completed_deliveries': completed,
            'success_rate': round(successful / max(completed, 1), 4),
        },
    }


def estimated_fee(parcel, travel) -> Decimal:
    """Base fee adjusted for special handling and insurance."""
    fee = Decimal(str(travel.base_delivery_fee))

    if parcel.special_handling:
        fee *= Decimal('1.10')

    if parcel.insurance_required:
        if parcel.insurance_amount:
            fee += Decimal(str(parcel.insurance_amount))
        else:
            fee += Decimal(str(parcel.declared_value)) * Decimal('0.02')

    return money(fee)


def suggest_pricing(parcel, travel) -> PricingSuggestion:
    """Negotiation range: 10% under the base fee up to a capped 20% premium."""
    base_fee = Decimal(str(travel.base_delivery_fee))
    min_fee = base_fee * Decimal('0.9')
    max_fee = min(base_fee * Decimal('1.2'), max_acceptable_fee(parcel.declared_value))

    return PricingSuggestion(
        suggested_fee=money((min_fee + max_fee) / 2),
        min_fee=money(min_fee),
        max_fee=money(max_fee),
    )


def match_reasons(breakdown: ScoreBreakdown) -> List[str]:
    """Tags for the factors that scored well."""
    return [
        f"{name}_match"
        for name, value in breakdown.sub_scores().items()
        if value >= REASON_THRESHOLD
    ]
