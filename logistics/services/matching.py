"""
LOGISTICS App - Match Finder for PARCELFLYTE

Finds and ranks travels able to carry a given parcel.

Two stages:
  1. Hard constraints in the database (status, capacity, departure
     before the delivery deadline, optional caller filters)
  2. Ranking in Python with the MatchScorer

Candidates are pre-sorted by carrier rating and capped before scoring,
so a very large catalogue never gets scored in full.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from django.conf import settings

from core.exceptions import get_or_not_found
from logistics.models import Parcel, Travel, OPEN_TRAVEL_STATUSES
from logistics.services.scoring import (
    MatchScorer, ScoreBreakdown, estimated_fee, match_details, match_reasons,
)

logger = logging.getLogger(__name__)


DEFAULT_SEARCH_LIMIT = 20


# ============================================
# CANDIDATE DATA CLASS
# ============================================

@dataclass
class Candidate:
    """A scored travel offered for a parcel."""
    travel: Travel
    carrier: Any
    breakdown: ScoreBreakdown
    details: Dict[str, Any]
    estimated_fee: Decimal

    @property
    def match_score(self) -> float:
        return self.breakdown.total

    @property
    def reasons(self) -> List[str]:
        return match_reasons(self.breakdown)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'travel_id': str(self.travel.id),
            'carrier_id': str(self.carrier.id) if self.carrier else None,
            'carrier_name': self.carrier.full_name if self.carrier else '',
            'carrier_rating': float(self.carrier.average_rating) if self.carrier else 0.0,
            'match_score': self.match_score,
            'score_breakdown': self.breakdown.to_dict(),
            'match_details': self.details,
            'match_reasons': self.reasons,
            'estimated_delivery_fee': float(self.estimated_fee),
        }


# ============================================
# MATCH FINDER
# ============================================

class MatchFinder:
    """
    Usage:
        finder = MatchFinder()
        candidates = finder.find_matches_for_parcel(parcel_id, {'max_fee': 40})
    """

    def __init__(self, scorer: MatchScorer = None):
        self.scorer = scorer or MatchScorer()
        self.candidate_limit = settings.MATCHING_CANDIDATE_LIMIT

    @staticmethod
    def _apply_filters(queryset, filters: Dict[str, Any]):
        """AND together the optional caller filters."""
        if filters.get('max_fee') is not None:
            queryset = queryset.filter(base_delivery_fee__lte=filters['max_fee'])
        if filters.get('min_rating') is not None:
            queryset = queryset.filter(carrier__average_rating__gte=filters['min_rating'])
        if filters.get('travel_mode'):
            queryset = queryset.filter(travel_mode=filters['travel_mode'])
        if filters.get('departure_country'):
            queryset = queryset.filter(departure_country=filters['departure_country'])
        if filters.get('arrival_country'):
            queryset = queryset.filter(arrival_country=filters['arrival_country'])
        return queryset

    def eligible_travels(self, parcel: Parcel, filters: Optional[Dict[str, Any]] = None):
        """Travels satisfying every hard constraint for this parcel."""
        queryset = Travel.objects.select_related('carrier').filter(
            status__in=OPEN_TRAVEL_STATUSES,
            available_weight__gte=parcel.weight,
            available_volume__gte=parcel.volume or 0,
        )
        if parcel.delivery_deadline is not None:
            queryset = queryset.filter(departure_date__lte=parcel.delivery_deadline)

        queryset = self._apply_filters(queryset, filters or {})
        return queryset.order_by('-carrier__average_rating', 'departure_date', 'id')

    def rank(self, parcel: Parcel, travels) -> List[Candidate]:
        """Score travels for a parcel, best first. Ties keep the input order."""
        candidates = []
        for travel in travels:
            carrier = travel.carrier
            candidates.append(Candidate(
                travel=travel,
                carrier=carrier,
                breakdown=self.scorer.score(parcel, travel, carrier),
                details=match_details(parcel, travel, carrier),
                estimated_fee=estimated_fee(parcel, travel),
            ))

        candidates.sort(key=lambda candidate: candidate.match_score, reverse=True)
        return candidates

    def find_matches_for_parcel(
        self,
        parcel_id,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[Candidate]:
        """
        Rank travels able to carry a parcel.

        Args:
            parcel_id: UUID of the parcel
            filters: optional max_fee, min_rating, travel_mode,
                     departure_country, arrival_country

        Returns:
            List of Candidate objects, highest score first

        Raises:
            NotFound: If the parcel does not exist
        """
        parcel = get_or_not_found(Parcel.objects.all(), parcel_id, 'Parcel')

        travels = list(self.eligible_travels(parcel, filters)[:self.candidate_limit])
        candidates = self.rank(parcel, travels)

        logger.info(
            f"[MATCHING] Parcel {str(parcel.id)[:8]}: "
            f"{len(candidates)} candidate travels scored"
        )
        return candidates

    def auto_match_parcel(
        self,
        parcel_id,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[Candidate]:
        """High-quality candidates only, capped to the configured count."""
        min_score = settings.MATCHING_AUTO_MATCH_MIN_SCORE
        limit = settings.MATCHING_AUTO_MATCH_LIMIT

        candidates = self.find_matches_for_parcel(parcel_id, filters)
        selected = [c for c in candidates if c.match_score >= min_score][:limit]

        logger.info(
            f"[MATCHING] Auto-match for parcel {str(parcel_id)[:8]}: "
            f"{len(selected)}/{len(candidates)} above {min_score}"
        )
        return selected

    @staticmethod
    def available_travels(criteria: Optional[Dict[str, Any]] = None):
        """Open travels matching free-form search criteria, best carriers first (unsliced)."""
        criteria = criteria or {}
        queryset = Travel.objects.select_related('carrier').filter(
            status__in=OPEN_TRAVEL_STATUSES
        )

        if criteria.get('departure_city'):
            queryset = queryset.filter(departure_city__iexact=criteria['departure_city'])
        if criteria.get('arrival_city'):
            queryset = queryset.filter(arrival_city__iexact=criteria['arrival_city'])
        if criteria.get('departure_country'):
            queryset = queryset.filter(departure_country__iexact=criteria['departure_country'])
        if criteria.get('arrival_country'):
            queryset = queryset.filter(arrival_country__iexact=criteria['arrival_country'])
        if criteria.get('weight') is not None:
            queryset = queryset.filter(available_weight__gte=criteria['weight'])
        if criteria.get('volume') is not None:
            queryset = queryset.filter(available_volume__gte=criteria['volume'])
        if criteria.get('max_fee') is not None:
            queryset = queryset.filter(base_delivery_fee__lte=criteria['max_fee'])
        if criteria.get('travel_mode'):
            queryset = queryset.filter(travel_mode=criteria['travel_mode'])
        if criteria.get('deadline') is not None:
            queryset = queryset.filter(arrival_date__lte=criteria['deadline'])

        return queryset.order_by('-carrier__average_rating', 'departure_date', 'id')

    @classmethod
    def find_available_travels(
        cls,
        criteria: Optional[Dict[str, Any]] = None,
        offset: int = 0,
        limit: int = DEFAULT_SEARCH_LIMIT
    ) -> List[Travel]:
        """One page of available_travels()."""
        return list(cls.available_travels(criteria)[offset:offset + limit])
