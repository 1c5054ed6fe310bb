"""Engine error taxonomy.

Validation and ownership errors are returned to the caller synchronously.
Methodology errors are absorbed by the engine and only affect applicability.
Transaction errors abort the whole operation with no partial state.
"""
from __future__ import annotations

from dataclasses import dataclass

OUT_OF_RANGE = "out_of_range"
UNEXPECTED_FIELD = "unexpected_field"
MISSING_REQUIRED_FIELD = "missing_required_field"
INVALID_TYPE = "invalid_type"


class EngineError(Exception):
    """Base class for every error the engine surfaces."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class FieldIssue:
    code: str
    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "field": self.field, "message": self.message}


class ValidationFailure(EngineError):
    """One or more questionnaire fields failed validation."""
    def __init__(self, issues: list[FieldIssue]):
        summary = "; ".join(f"{i.field}: {i.message}" for i in issues)
        super().__init__(f"Questionnaire validation failed: {summary}")
        self.issues = list(issues)

    @property
    def fields(self) -> list[str]:
        return [i.field for i in self.issues]

    def codes_for(self, field: str) -> list[str]:
        return [i.code for i in self.issues if i.field == field]


class InsufficientDataError(EngineError):
    """The answers do not clear the minimum-completeness threshold."""
    def __init__(self, missing_fields: list[str], message: str | None = None):
        super().__init__(message or f"Insufficient data; missing essential fields: {', '.join(missing_fields)}")
        self.missing_fields = list(missing_fields)


class MethodologyFailure(EngineError):
    """A methodology raised or timed out; recovered internally."""
    def __init__(self, methodology_id: str, message: str):
        super().__init__(f"{methodology_id}: {message}")
        self.methodology_id = methodology_id


class NotOwner(EngineError):
    def __init__(self, evaluation_id: int, actor_id: str):
        super().__init__(f"Actor {actor_id!r} does not own evaluation {evaluation_id}")
        self.evaluation_id = evaluation_id
        self.actor_id = actor_id


class EvaluationNotFound(EngineError):
    def __init__(self, label: str, entity_id: int):
        super().__init__(f"{label} {entity_id} not found")
        self.entity_id = entity_id


class EvaluationStateError(EngineError):
    """The requested transition is not allowed from the record's current state."""


class CascadeTransactionFailure(EngineError):
    """The atomic write failed and was rolled back; safe to retry."""
    def __init__(self, message: str):
        super().__init__(message, retryable=True)
