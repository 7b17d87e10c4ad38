"""
CORE App - Domain Errors for PARCELFLYTE

Services raise these; views translate them into HTTP responses.
None of them is retried and none of them is fatal to the process.
"""

from rest_framework import status
from rest_framework.response import Response


class DomainError(ValueError):
    """Base class for user-reportable business errors."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = 'error'

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {'error': self.message, 'code': self.code, **self.extra}


class NotFound(DomainError):
    """A referenced parcel, travel, match, payment or user is absent."""

    status_code = status.HTTP_404_NOT_FOUND
    code = 'not_found'


class Conflict(DomainError):
    """Duplicate active match, payment or rating."""

    status_code = status.HTTP_409_CONFLICT
    code = 'conflict'


class InvalidState(DomainError):
    """Wrong current status for the requested transition."""

    code = 'invalid_state'


class MatchExpired(InvalidState):
    """A proposed match was used after its expiry deadline."""

    code = 'expired'


class BusinessValidationError(DomainError):
    """Missing or out-of-range input (fee cap, rating range, dimensions)."""

    code = 'validation_error'


class Unauthorized(DomainError):
    """Caller is not a party to the match or parcel."""

    status_code = status.HTTP_403_FORBIDDEN
    code = 'unauthorized'


def error_response(exc: DomainError):
    """Translate a domain error into the API error envelope."""
    return Response({'error': exc.message, **exc.extra}, status=exc.status_code)


def get_or_not_found(queryset, pk, label: str):
    """
    Fetch one row by primary key or raise NotFound.

    Malformed identifiers are reported as missing rather than as a
    database error.
    """
    from django.core.exceptions import ValidationError as DjangoValidationError
    try:
        return queryset.get(pk=pk)
    except (queryset.model.DoesNotExist, DjangoValidationError, ValueError, TypeError):
        raise NotFound(f"{label} {pk} not found")
