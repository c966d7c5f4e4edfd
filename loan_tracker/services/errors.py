from __future__ import annotations


class LoanTrackerError(RuntimeError):
    """Base class for every failure the service layer reports to its callers."""

    kind = "error"
    status_code = 500
    retryable = False


class ValidationError(LoanTrackerError):
    kind = "validation"
    status_code = 400


class NotFoundError(LoanTrackerError):
    kind = "not_found"
    status_code = 404


class ConflictError(LoanTrackerError):
    kind = "conflict"
    status_code = 409


class InsufficientAvailabilityError(LoanTrackerError):
    kind = "insufficient_availability"
    status_code = 409


class AlreadyReturnedError(LoanTrackerError):
    kind = "already_returned"
    status_code = 409


class InvariantViolation(LoanTrackerError):
    kind = "invariant_violation"
    status_code = 500


class TransientError(LoanTrackerError):
    kind = "transient"
    status_code = 503
    retryable = True
