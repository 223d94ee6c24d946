"""
Typed errors raised by the reconciliation engine.

Every error carries a human message plus a `details` dict so the HTTP layer can
return something front-line staff can act on (which agent owns a number, which
payment was already claimed and by whom).
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    http_status = 500
    code = "engine_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(EngineError):
    """Bad or missing input. Nothing was written."""
    http_status = 400
    code = "validation_error"


class NotFoundError(ValidationError):
    http_status = 404
    code = "not_found"


class ConflictError(EngineError):
    """Ownership or already-claimed conflict. Nothing was written."""
    http_status = 409
    code = "conflict"


class AlreadyClaimed(ConflictError):
    code = "already_claimed"


class NotYourLead(ConflictError):
    code = "not_your_lead"


class PreconditionError(EngineError):
    """Entity is in the wrong state for the requested transition."""
    http_status = 409
    code = "precondition_failed"


class BelowMinimumThreshold(PreconditionError):
    code = "below_minimum_threshold"


class PersistenceError(EngineError):
    """A store write failed after validation passed. Caller should retry the whole operation."""
    http_status = 503
    code = "persistence_error"
