"""
Error taxonomy for the flashcard orchestrator.

Every error raised by deckforge derives from DeckforgeError so the API layer
can turn it into a uniform JSON response:

- TransientDependencyError: retryable upstream failure (429, 5xx, network, timeout)
- PersistentDependencyError: dependency is known to be down (circuit open)
- ContentError: the module's content cannot produce a deck; fails only that module
- CancellationError: a cancel token fired during a sleep or between calls
- PersistenceError: job/deck storage is unavailable; fails the whole job
"""

from __future__ import annotations

from typing import Any

MAX_ERROR_MESSAGE_LENGTH = 500


class DeckforgeError(Exception):
    """Base class for all deckforge errors."""

    http_status: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "", details: dict[str, Any] | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details or {}
        # Filled in by with_retry_throw on exhaustion
        self.attempts: int | None = None
        self.total_delay_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            data["details"] = self.details
        return data


# ========================================
# Dependency errors
# ========================================


class TransientDependencyError(DeckforgeError):
    """Retryable upstream failure: rate limited, 5xx, or network blip."""

    http_status = 503
    error_code = "DEPENDENCY_UNAVAILABLE"

    def __init__(
        self,
        message: str = "",
        *,
        dependency: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.dependency = dependency
        self.status_code = status_code
        self.retry_after = retry_after


class CallTimeout(TransientDependencyError):
    """A single call exceeded its per-call timeout."""

    error_code = "TIMEOUT"


class UpstreamRateLimited(TransientDependencyError):
    """The upstream provider answered 429."""

    http_status = 429
    error_code = "UPSTREAM_RATE_LIMITED"


class PersistentDependencyError(DeckforgeError):
    """Dependency is considered down; calls are rejected without being attempted."""

    http_status = 503
    error_code = "DEPENDENCY_DOWN"


class CircuitOpenError(PersistentDependencyError):
    """Raised when a circuit breaker rejects a call."""

    error_code = "CIRCUIT_OPEN"

    def __init__(self, key: str, retry_after_seconds: int):
        super().__init__(
            f"Circuit breaker open for {key}. Try again in {retry_after_seconds}s",
            details={"dependency": key, "retry_after_seconds": retry_after_seconds},
        )
        self.key = key
        self.retry_after_seconds = retry_after_seconds


# ========================================
# Content errors
# ========================================


class ContentError(DeckforgeError):
    """The module's content cannot be turned into a deck."""

    http_status = 422
    error_code = "CONTENT_ERROR"


class InsufficientContent(ContentError):
    """No (or too few) chunks were available for the module."""

    error_code = "INSUFFICIENT_CONTENT"


class GenerationEmpty(ContentError):
    """Stage B produced fewer cards than the minimum viable count."""

    error_code = "GENERATION_EMPTY"


class MalformedOutput(ContentError):
    """LLM output could not be parsed or failed schema validation, even after repair."""

    error_code = "INVALID_LLM_OUTPUT"


# ========================================
# Control flow
# ========================================


class CancellationError(DeckforgeError):
    """A cancellation token fired while work was waiting."""

    http_status = 409
    error_code = "CANCELLED"


class PersistenceError(DeckforgeError):
    """Job or deck storage failed."""

    http_status = 503
    error_code = "PERSISTENCE_UNAVAILABLE"


class DeckVersionConflict(DeckforgeError):
    """A conditional deck save found a different latest version than expected."""

    http_status = 409
    error_code = "DECK_VERSION_CONFLICT"

    def __init__(self, course_id: str, module_id: str, expected: int, current: int):
        super().__init__(
            f"Deck {course_id}/{module_id} is at v{current}, expected v{expected}",
            details={
                "course_id": course_id,
                "module_id": module_id,
                "expected_version": expected,
                "latest_version": current,
            },
        )
        self.expected = expected
        self.current = current


# ========================================
# API-level errors
# ========================================


class InvalidRequest(DeckforgeError):
    http_status = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationRequired(DeckforgeError):
    http_status = 401
    error_code = "AUTHENTICATION_REQUIRED"


class PermissionDenied(DeckforgeError):
    http_status = 403
    error_code = "FORBIDDEN"


class JobNotFound(DeckforgeError):
    http_status = 404
    error_code = "NOT_FOUND"

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found", details={"job_id": job_id})


class DeckNotFound(DeckforgeError):
    http_status = 404
    error_code = "NOT_FOUND"


class CardNotFound(DeckforgeError):
    http_status = 404
    error_code = "NOT_FOUND"

    def __init__(self, card_id: str):
        super().__init__(f"Card {card_id} not found in review queue", details={"card_id": card_id})


class InvalidJobState(DeckforgeError):
    http_status = 409
    error_code = "INVALID_JOB_STATE"


class StaleReviewItem(DeckforgeError):
    """The deck a review item belongs to has been superseded by a newer version."""

    http_status = 409
    error_code = "STALE_REVIEW_ITEM"


class RateLimitExceeded(DeckforgeError):
    http_status = 429
    error_code = "RATE_LIMITED"

    def __init__(self, retry_after_seconds: int, limit: int):
        super().__init__(
            "Too many requests",
            details={"retryAfter": retry_after_seconds, "limit": limit},
        )
        self.retry_after_seconds = retry_after_seconds
        self.limit = limit


def truncate_error(message: str, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    """Trim an error message for storage in job/module results."""
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."
