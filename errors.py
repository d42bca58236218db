# Meridian error taxonomy.
#
# Every failure the core surfaces to a caller is one of these. Each carries a
# stable machine code, the HTTP status the API maps it to, and whether a retry
# can possibly help.

from typing import Optional


class MeridianError(Exception):
    """Base class for structured core errors."""

    code = "meridian_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str = "", details: Optional[dict] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(MeridianError, ValueError):
    """Malformed input. Always safe to reject immediately."""

    code = "validation_error"
    http_status = 400


class NotFound(ValidationError):
    code = "not_found"
    http_status = 404


class Unauthorized(MeridianError):
    """The authenticated actor is not the party allowed to do this."""

    code = "unauthorized"
    http_status = 403


class InvalidTransition(MeridianError, ValueError):
    """State machine precondition violated. The caller's view is stale."""

    code = "invalid_transition"
    http_status = 409

    def __init__(self, current: str, attempted: str, reason: str = ""):
        message = f"Invalid transition: {current} → {attempted}"
        if reason:
            message += f" ({reason})"
        super().__init__(message, {"current": current, "attempted": attempted, "reason": reason})
        self.current = current
        self.attempted = attempted


class ConcurrencyConflict(MeridianError):
    """Lost a race against a concurrent writer."""

    code = "concurrency_conflict"
    http_status = 409


class JobAlreadyAccepted(ConcurrencyConflict):
    code = "job_already_accepted"


class SettlementUnavailable(MeridianError):
    """Settlement layer unreachable or rejected the call."""

    code = "settlement_unavailable"
    http_status = 503
    retryable = True


class SettlementUnknownOutcome(MeridianError):
    """Timed out with an unclear result. Re-query before any retry."""

    code = "settlement_unknown_outcome"
    http_status = 504


class LedgerInvariantViolation(MeridianError):
    """Should never happen. Fatal for the entity, logged for manual reconciliation."""

    code = "ledger_invariant_violation"
    http_status = 500


class ReversalNotAllowed(MeridianError):
    code = "reversal_not_allowed"
    http_status = 409


class EventAlreadyReversed(ReversalNotAllowed):
    code = "event_already_reversed"


class ReputationUpdateFailed(MeridianError):
    """Aggregate update failed; the event is parked as failed for an operator."""

    code = "reputation_update_failed"
    http_status = 500
