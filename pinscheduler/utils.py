"""
Shared utility functions used throughout the pin scheduler.

Provides:
    - utc_now(): Timezone-aware UTC datetime (for Supabase TIMESTAMPTZ columns)
    - generate_id(): UUID4 string generator (for database primary keys)
    - ensure_utc(dt): Convert any datetime to timezone-aware UTC
    - parse_timestamp(value): Lenient ISO/datetime parser for DB rows
    - @with_retry: Decorator with exponential backoff for transient failures
"""

from datetime import datetime, timezone
import uuid
import asyncio
import logging
import inspect
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from pinscheduler.exceptions import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Signature of injectable clocks used by the schedulers.
Clock = Callable[[], datetime]


# ===========================================================================
# TIMEZONE UTILITIES
# All timestamps stored in Supabase must be timezone-aware (TIMESTAMPTZ)
# ===========================================================================


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    ALWAYS use this instead of ``datetime.now()`` or ``datetime.utcnow()``
    for Supabase compatibility (TIMESTAMPTZ columns).

    Returns:
        Timezone-aware datetime in UTC.
    """
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """
    Generate a unique ID for database records.

    Returns:
        A unique UUID string (compatible with Supabase UUID type).
    """
    return str(uuid.uuid4())


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure a datetime is timezone-aware in UTC.

    Args:
        dt: Datetime to convert (naive or aware).

    Returns:
        Timezone-aware datetime in UTC.
    """
    if dt.tzinfo is None:
        # Assume naive datetime is UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-format timestamp string into a timezone-aware datetime.

    Handles both timezone-aware and naive ISO strings (naive is UTC) as
    well as a trailing ``Z`` as emitted by PostgREST.

    Args:
        value: ISO-format string, datetime, or ``None``.

    Returns:
        Timezone-aware UTC datetime, or ``None`` if parsing fails.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        return ensure_utc(value)

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except (ValueError, TypeError):
            return None

    return None


# ===========================================================================
# RETRY DECORATOR WITH EXPONENTIAL BACKOFF
# Used for idempotent outbound calls only (analytics reads). Job-level
# publish retries are owned by the retry policy, not this decorator.
# ===========================================================================


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 2.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    operation_name: Optional[str] = None,
) -> Callable:
    """
    Decorator for async retry logic with exponential backoff.

    Delays grow as ``base_delay * (2 ** (attempt - 1))``.  Exceptions not
    listed in ``retryable_exceptions`` propagate immediately.

    Args:
        max_attempts: Maximum number of attempts (default ``3``).
        base_delay: Initial delay in seconds before the first retry.
        retryable_exceptions: Exception types that trigger a retry.
        operation_name: Name used in log messages; defaults to the
            wrapped function's ``__name__``.

    Raises:
        TypeError: If the decorated callable is not a coroutine function.
        RetryExhaustedError: When all retry attempts have been exhausted.

    Usage::

        @with_retry(max_attempts=3, retryable_exceptions=(httpx.TransportError,))
        async def fetch_analytics(pin_id: str) -> dict:
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"with_retry requires an async function, got {func!r}")
        op_name = operation_name or func.__name__

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Optional[Exception] = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    last_error = e
                    if attempt == max_attempts:
                        logger.error(
                            "[RETRY EXHAUSTED] %s failed after %d attempts: %s",
                            op_name,
                            max_attempts,
                            e,
                        )
                        break
                    delay = base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "[RETRY] %s attempt %d/%d failed: %s. Retrying in %.1fs...",
                        op_name,
                        attempt,
                        max_attempts,
                        e,
                        delay,
                    )
                    await asyncio.sleep(delay)
            raise RetryExhaustedError(
                op_name, max_attempts, last_error  # type: ignore[arg-type]
            ) from last_error

        return wrapper

    return decorator
