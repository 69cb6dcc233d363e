"""
Pembinaan Engine - Error Taxonomy

Services raise these; the API layer maps them to HTTP status codes.
Matching never raises for bad input, it degrades to a `none` match.
"""


class PembinaanError(Exception):
    """Base class for all engine errors."""
    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PembinaanError):
    """Malformed input, rejected before any state mutation."""
    kind = "validation_error"
    status_code = 422


class ConflictError(PembinaanError):
    """Slot double-booked or illegal state transition. Retry with fresh data."""
    kind = "conflict"
    status_code = 409


class NotFoundError(PembinaanError):
    """Unknown case, reservation, counselor or catalog id."""
    kind = "not_found"
    status_code = 404


class InfrastructureError(PembinaanError):
    """Catalog or store unavailable. Never retried by the engine."""
    kind = "infrastructure_error"
    status_code = 503
