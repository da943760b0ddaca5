"""
Custom exception classes for the pin publish scheduler.

Validation problems are raised synchronously at enqueue/update time and
never enter the job pipeline.  Precondition and transient execution errors
are raised by collaborators and converted by the publish executor into
``failed`` transitions so the retry policy applies uniformly.

Hierarchy:
    Exception
    +-- SchedulerBaseError
    |   +-- PinterestAPIError
    |   |   +-- PinterestRateLimitError
    |   +-- MissingAccessTokenError
    |   +-- JobNotFoundError
    |   +-- InvalidTransitionError
    +-- ValidationError (ValueError)
    |   +-- ScheduleWindowError
    |   +-- RecurrenceValidationError
    |   +-- PlanLimitExceededError
    |   +-- AccountNotConnectedError
    +-- DatabaseError
    +-- ConfigurationError
    +-- RetryExhaustedError
"""

from typing import Optional


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class SchedulerBaseError(Exception):
    """Base exception for all scheduler runtime errors."""

    pass


# =============================================================================
# CORE EXCEPTIONS
# =============================================================================


class ValidationError(ValueError):
    """Raised when input validation fails."""

    pass


class DatabaseError(Exception):
    """Raised when database operations fail."""

    pass


class ConfigurationError(Exception):
    """Raised when system configuration is invalid."""

    pass


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        operation: Name of the operation that was retried.
        attempts: Total number of attempts made.
        last_error: The last exception raised before giving up.
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts. "
            f"Last error: {last_error}"
        )


# =============================================================================
# PINTEREST API EXCEPTIONS
# =============================================================================


class PinterestAPIError(SchedulerBaseError):
    """Raised for Pinterest API failures (HTTP errors or error bodies).

    Attributes:
        status_code: HTTP status of the response, if one was received.
        code: Pinterest error code from the response body, if present.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
    ):
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class PinterestRateLimitError(PinterestAPIError):
    """Raised when Pinterest answers with HTTP 429."""

    pass


class MissingAccessTokenError(SchedulerBaseError):
    """Raised when no usable Pinterest access token exists for an owner/account."""

    def __init__(self, owner: str, account_id: Optional[str] = None):
        self.owner = owner
        self.account_id = account_id
        target = f"account {account_id}" if account_id else "default account"
        super().__init__(
            f"No Pinterest access token found for user {owner} ({target})"
        )


# =============================================================================
# JOB LIFECYCLE EXCEPTIONS
# =============================================================================


class JobNotFoundError(SchedulerBaseError):
    """Raised when a job does not exist or belongs to another owner."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Scheduled pin {job_id} not found")


class InvalidTransitionError(SchedulerBaseError):
    """Raised when a requested operation is not allowed in the job's status."""

    pass


# =============================================================================
# VALIDATION EXCEPTIONS
# =============================================================================


class ScheduleWindowError(ValidationError):
    """Raised when ``scheduled_for`` is in the past or too far ahead."""

    pass


class RecurrenceValidationError(ValidationError):
    """Raised when a recurrence pattern is malformed."""

    pass


class PlanLimitExceededError(ValidationError):
    """Raised when an owner already has the maximum number of active jobs.

    Attributes:
        plan_type: The owner's plan.
        limit: Active-job limit for that plan.
    """

    def __init__(self, plan_type: str, limit: int):
        self.plan_type = plan_type
        self.limit = limit
        super().__init__(
            f"Plan '{plan_type}' allows at most {limit} active scheduled pins"
        )


class AccountNotConnectedError(ValidationError):
    """Raised at enqueue time when the target Pinterest account is not usable."""

    pass


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Base
    "SchedulerBaseError",
    # Core
    "ValidationError",
    "DatabaseError",
    "ConfigurationError",
    "RetryExhaustedError",
    # Pinterest API
    "PinterestAPIError",
    "PinterestRateLimitError",
    "MissingAccessTokenError",
    # Job lifecycle
    "JobNotFoundError",
    "InvalidTransitionError",
    # Validation
    "ScheduleWindowError",
    "RecurrenceValidationError",
    "PlanLimitExceededError",
    "AccountNotConnectedError",
]
