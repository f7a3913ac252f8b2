"""
Job error taxonomy.

  transient              timeouts, temporary unavailability  → retry with backoff
  external_service_down  a dependency is down / breaker open → retry, breaker sheds load
  permanent              malformed payload, unknown job      → no retry, dead-letter
"""
from __future__ import annotations

import asyncio
from enum import Enum

from pydantic import ValidationError


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    EXTERNAL_SERVICE_DOWN = "external_service_down"
    PERMANENT = "permanent"


class JobError(Exception):
    """Base exception for all job processing failures."""

    category = ErrorCategory.TRANSIENT

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class TransientJobError(JobError):
    category = ErrorCategory.TRANSIENT


class ExternalServiceDownError(JobError):
    category = ErrorCategory.EXTERNAL_SERVICE_DOWN


class PermanentJobError(JobError):
    category = ErrorCategory.PERMANENT

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class CircuitOpenError(ExternalServiceDownError):
    def __init__(self, name: str = ""):
        self.name = name
        super().__init__(f"Circuit breaker open for {name or 'call'}")


class CallTimeoutError(TransientJobError):
    def __init__(self, name: str = "", timeout: float = 0.0):
        super().__init__(f"Call to {name or 'dependency'} timed out after {timeout}s")


class ProviderUnavailableError(ExternalServiceDownError):
    """A push provider could not deliver for a transient reason."""


_PERMANENT_BUILTINS = (ValidationError, KeyError, ValueError, TypeError)
_TRANSIENT_BUILTINS = (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)


def classify_error(exc: BaseException) -> ErrorCategory:
    """Map an exception raised by a job handler onto the retry taxonomy."""
    if isinstance(exc, JobError):
        return exc.category
    if isinstance(exc, _TRANSIENT_BUILTINS):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, _PERMANENT_BUILTINS):
        return ErrorCategory.PERMANENT
    text = str(exc).lower()
    if "service unavailable" in text:
        return ErrorCategory.EXTERNAL_SERVICE_DOWN
    return ErrorCategory.TRANSIENT
