"""
Custom exception classes for the questionnaire and scoring engine.

Every error carries a stable machine-readable ``code`` and the HTTP status the
web layer answers with, alongside a user-friendly message and structured details.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import Any


class MoobeeError(Exception):
    """Base exception for all application errors."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        user_message: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.user_message = user_message or self._get_default_user_message()

    def _get_default_user_message(self) -> str:
        return "An unexpected error occurred. Please try again."

    def __str__(self) -> str:
        return f"{self.__class__.__name__}: {self.message}"


# ---------------------------------------------------------------- validation


class ValidationError(MoobeeError):
    """Raised when input validation fails."""

    code = "VALIDATION_ERROR"
    http_status = 422

    def __init__(
        self, field: str, message: str, value: Any = None, details: dict[str, Any] | None = None
    ):
        self.field = field
        self.value = value
        super().__init__(
            message=f"Validation failed for field '{field}': {message}",
            details=details or {"errors": [{"field": field, "message": message, "value": value}]},
            user_message=f"Invalid {field.replace('_', ' ')}: {message}",
        )
        self.reason = message


class MultipleValidationError(MoobeeError):
    """Raised when several fields fail validation at once."""

    code = "VALIDATION_ERROR"
    http_status = 422

    def __init__(self, errors: list[ValidationError]):
        self.validation_errors = errors
        messages = [f"{e.field}: {e.reason}" for e in errors]
        super().__init__(
            message=f"Multiple validation errors: {'; '.join(messages)}",
            details={
                "errors": [
                    {"field": e.field, "message": e.reason, "value": e.value} for e in errors
                ]
            },
            user_message="Please correct the following errors and try again.",
        )


class IncompleteResponseError(MoobeeError):
    """Raised when required questions are missing from a submission."""

    code = "INCOMPLETE_RESPONSE"
    http_status = 422

    def __init__(self, missing: Iterable[int]):
        self.missing = sorted(missing)
        super().__init__(
            message=f"Required questions not answered: {self.missing}",
            details={"missing": self.missing},
            user_message="Please answer all required questions before submitting.",
        )


# ------------------------------------------------------------------ not found


class NotFoundError(MoobeeError):
    """Raised when a referenced entity does not exist within the tenant."""

    code = "NOT_FOUND"
    http_status = 404
    entity = "entity"

    def __init__(self, entity_id: Any):
        self.entity_id = entity_id
        super().__init__(
            message=f"{self.entity.capitalize()} with ID {entity_id} not found",
            details={"entity": self.entity, "id": entity_id},
        )

    def _get_default_user_message(self) -> str:
        return f"The requested {self.entity} could not be found."


class TemplateNotFoundError(NotFoundError):
    code = "TEMPLATE_NOT_FOUND"
    entity = "template"


class CampaignNotFoundError(NotFoundError):
    code = "CAMPAIGN_NOT_FOUND"
    entity = "campaign"


class AssignmentNotFoundError(NotFoundError):
    code = "ASSIGNMENT_NOT_FOUND"
    entity = "assignment"


class RoleNotFoundError(NotFoundError):
    code = "ROLE_NOT_FOUND"
    entity = "role"


class EmployeeNotFoundError(NotFoundError):
    code = "EMPLOYEE_NOT_FOUND"
    entity = "employee"


class ResultNotFoundError(NotFoundError):
    code = "RESULT_NOT_FOUND"
    entity = "result"


# ------------------------------------------------------------------- conflict


class ConflictError(MoobeeError):
    """Raised when an operation collides with the current state of an entity."""

    code = "CONFLICT"
    http_status = 409

    def __init__(self, message: str, entity_id: Any = None, details: dict[str, Any] | None = None):
        self.entity_id = entity_id
        payload = {"id": entity_id}
        payload.update(details or {})
        super().__init__(message=message, details=payload)

    def _get_default_user_message(self) -> str:
        return "This operation conflicts with the current state. Please refresh and try again."


class TemplateInUseError(ConflictError):
    code = "TEMPLATE_IN_USE"

    def __init__(self, template_id: int):
        super().__init__(
            f"Template {template_id} is referenced by assignments; duplicate it instead",
            entity_id=template_id,
        )


class CampaignAlreadyCancelledError(ConflictError):
    code = "CAMPAIGN_ALREADY_CANCELLED"

    def __init__(self, campaign_id: int):
        super().__init__(f"Campaign {campaign_id} is already cancelled", entity_id=campaign_id)


class CampaignNotCancellableError(ConflictError):
    code = "CAMPAIGN_NOT_CANCELLABLE"

    def __init__(self, campaign_id: int, status: str):
        super().__init__(
            f"Campaign {campaign_id} cannot be cancelled from status {status}",
            entity_id=campaign_id,
            details={"status": status},
        )


class AlreadyCompletedError(ConflictError):
    code = "ALREADY_COMPLETED"

    def __init__(self, assignment_id: int, attempt_number: int | None = None):
        super().__init__(
            f"Assignment {assignment_id} is already completed",
            entity_id=assignment_id,
            details={"attempt_number": attempt_number},
        )


class DuplicateCampaignError(ConflictError):
    code = "DUPLICATE_CAMPAIGN"

    def __init__(self, campaign_id: int):
        super().__init__(
            f"A campaign with the same template, name and schedule exists ({campaign_id})",
            entity_id=campaign_id,
        )


class AssignmentClosedError(ConflictError):
    code = "ASSIGNMENT_CLOSED"

    def __init__(self, assignment_id: int, status: str):
        super().__init__(
            f"Assignment {assignment_id} is {status} and no longer accepts answers",
            entity_id=assignment_id,
            details={"status": status},
        )


# ------------------------------------------------------------------ providers


class AIProviderError(MoobeeError):
    """Raised by provider clients; the generator masks it with the fallback set."""

    code = "AI_PROVIDER_FAILURE"
    http_status = 502

    def __init__(self, message: str, provider: str, status: str = "failed"):
        self.provider = provider
        self.status = status
        super().__init__(message=message, details={"provider": provider, "status": status})


class GenerationIncompleteError(MoobeeError):
    """Raised when the generator cannot emit the requested number of questions."""

    code = "GENERATION_INCOMPLETE"
    http_status = 502

    def __init__(self, requested: int, received: int, dropped: int = 0):
        self.requested = requested
        self.received = received
        super().__init__(
            message=f"Generated {received} valid questions out of {requested} requested",
            details={"requested": requested, "received": received, "dropped": dropped},
            user_message="The AI provider returned an incomplete question set. Please retry.",
        )


# -------------------------------------------------------------------- scoring


class ScoringFailedError(MoobeeError):
    """Raised when a Result cannot be computed; the submission is rolled back."""

    code = "SCORING_FAILED"
    http_status = 500

    def __init__(self, assignment_id: int, correlation_id: str | None = None):
        self.correlation_id = correlation_id or uuid.uuid4().hex
        super().__init__(
            message=f"Scoring failed for assignment {assignment_id}",
            details={"correlation_id": self.correlation_id},
            user_message="Your answers could not be scored. Please retry in a moment.",
        )


# ---------------------------------------------------------------------- auth


class AuthorizationError(MoobeeError):
    """Generic access refusal. Never discloses whether the entity exists."""

    code = "FORBIDDEN"
    http_status = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message=message, user_message="Access denied.")


class AuthenticationError(MoobeeError):
    code = "UNAUTHORIZED"
    http_status = 401

    def __init__(self, message: str = "Missing or invalid credentials"):
        super().__init__(message=message, user_message="Please sign in again.")


# ------------------------------------------------------------------- database


class DatabaseError(MoobeeError):
    """Raised when database operations fail."""

    code = "DATABASE_ERROR"

    def __init__(self, message: str, operation: str, details: dict[str, Any] | None = None):
        self.operation = operation
        super().__init__(
            message=f"Database error during {operation}: {message}",
            details=details or {"operation": operation},
            user_message="A database error occurred. Please try again in a moment.",
        )


class ConnectionError(DatabaseError):
    """Raised when database connection fails."""

    code = "DATABASE_UNAVAILABLE"
    http_status = 503

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message=message, operation="connection", details=details)


class IntegrityError(DatabaseError):
    """Raised when database integrity constraints are violated."""

    code = "INTEGRITY_ERROR"
    http_status = 409

    def __init__(
        self,
        message: str,
        constraint: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.constraint = constraint
        super().__init__(
            message=message,
            operation="integrity_check",
            details=details or {"constraint": constraint},
        )


def handle_database_error(e: Exception, operation: str = "database operation") -> DatabaseError:
    """
    Convert driver exceptions to the matching DatabaseError subclass.

    Example:
        >>> try:
        ...     session.commit()
        ... except SQLAlchemyError as e:
        ...     raise handle_database_error(e, "commit transaction") from e
    """
    error_msg = str(e).lower()

    if "unique constraint" in error_msg or "duplicate" in error_msg:
        return IntegrityError(str(e), constraint="unique")
    elif "foreign key" in error_msg or "foreign_key" in error_msg:
        return IntegrityError(str(e), constraint="foreign_key")
    elif "check constraint" in error_msg:
        return IntegrityError(str(e), constraint="check")
    elif "connection" in error_msg or "timeout" in error_msg:
        return ConnectionError(str(e))
    else:
        return DatabaseError(str(e), operation)


def create_user_friendly_error_message(error: Exception) -> str:
    """
    Create a user-friendly error message from any exception.

    Example:
        >>> create_user_friendly_error_message(ValidationError("name", "cannot be empty"))
        'Invalid name: cannot be empty'
    """
    if isinstance(error, MoobeeError):
        return error.user_message

    messages = {
        "ValueError": "Invalid input provided. Please check your data and try again.",
        "KeyError": "Required information is missing. Please check your input.",
        "TypeError": "Incorrect data type provided. Please check your input format.",
    }
    return messages.get(
        type(error).__name__, "An unexpected error occurred. Please try again or contact support."
    )


def log_error_details(error: Exception, context: dict[str, Any] | None = None) -> dict[str, Any]:
    """Create structured error details for logging."""
    details: dict[str, Any] = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context or {},
    }

    if isinstance(error, MoobeeError):
        details.update(
            {"error_code": error.code, "user_message": error.user_message, "error_details": error.details}
        )

    return details
