"""Governance error taxonomy"""
from typing import Any


class GovernanceError(Exception):
    """
    Base error for consent and emergency-access decisions.

    Carries a stable ``kind`` plus the offending id / field so callers can
    render a precise message without parsing text.
    """

    kind = "governance_error"

    def __init__(self, message: str, entity_id: str | None = None, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "entity_id": self.entity_id,
            "field": self.field,
        }


class ValidationError(GovernanceError):
    """Malformed input."""
    kind = "validation_error"


class InvalidTransitionError(GovernanceError):
    """State machine rule violation."""
    kind = "invalid_transition"


class InvalidScopeError(GovernanceError):
    """Granular selection widens instead of narrowing."""
    kind = "invalid_scope"


class NotFoundError(GovernanceError):
    """Unknown id."""
    kind = "not_found"


class NotActiveError(GovernanceError):
    """Operation requires an active artifact or grant."""
    kind = "not_active"


class EmergencyAccessDisabledError(GovernanceError):
    """Emergency access is switched off for this patient."""
    kind = "disabled"


class ContactNotEligibleError(GovernanceError):
    """Contact is not marked eligible for emergency data."""
    kind = "contact_not_eligible"


class StorageUnavailableError(GovernanceError):
    """Persistence collaborator failed. Fatal, never retried by the core."""
    kind = "storage_unavailable"
