from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any

from recordshift.jobs.types import ErrorCategory
from recordshift.platform.types import PlatformApiError

NON_RETRYABLE = frozenset({ErrorCategory.VALIDATION, ErrorCategory.PERMISSION, ErrorCategory.DUPLICATE})

CATEGORY_LABELS: dict[ErrorCategory, str] = {
    ErrorCategory.NETWORK: "Network Error",
    ErrorCategory.RATE_LIMIT: "Rate Limit",
    ErrorCategory.VALIDATION: "Validation Error",
    ErrorCategory.PERMISSION: "Permission Denied",
    ErrorCategory.DUPLICATE: "Duplicate Item",
    ErrorCategory.UNKNOWN: "Unknown Error",
}

_NETWORK_WORDS = ("network", "timeout", "timed out", "econnrefused", "econnreset", "connection reset", "fetch failed")
_RATE_LIMIT_WORDS = ("rate limit", "too many requests")
_DUPLICATE_WORDS = ("duplicate", "already exists")
_VALIDATION_WORDS = ("invalid", "required", "validation")
_PERMISSION_WORDS = ("permission", "unauthorized", "forbidden")


class ItemValidationError(ValueError):
    """A source record that cannot be written as mapped."""


@dataclass(slots=True)
class ClassifiedError:
    category: ErrorCategory
    message: str
    code: str
    retry_delay_ms: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.category not in NON_RETRYABLE


def _classify_api_error(error: PlatformApiError) -> ClassifiedError | None:
    status = error.status_code
    if status is None:
        return None
    details = {"status_code": status, "error_code": error.error_code, "error_detail": error.error_detail}
    detail = (error.error_detail or "").lower()

    if error.is_rate_limited:
        return ClassifiedError(ErrorCategory.RATE_LIMIT, "API rate limit exceeded", "RATE_LIMIT_EXCEEDED", 5000, details)
    if error.is_server_error:
        return ClassifiedError(ErrorCategory.NETWORK, f"Server error: {status}", "SERVER_ERROR", 2000, details)
    if status in {401, 403}:
        return ClassifiedError(ErrorCategory.PERMISSION, "Permission denied", "PERMISSION_DENIED", None, details)
    if status == 409 or error.error_code == "duplicate" or any(word in detail for word in _DUPLICATE_WORDS):
        return ClassifiedError(ErrorCategory.DUPLICATE, "Duplicate item detected", "DUPLICATE_ITEM", None, details)
    if status == 404:
        return ClassifiedError(ErrorCategory.VALIDATION, "Resource not found", "NOT_FOUND", None, details)
    if status in {400, 422}:
        message = error.error_detail or "Invalid data"
        return ClassifiedError(ErrorCategory.VALIDATION, message, "VALIDATION_ERROR", None, details)
    return None


def classify_error(error: BaseException) -> ClassifiedError:
    """Map any failure onto the fixed error taxonomy."""
    if isinstance(error, PlatformApiError):
        classified = _classify_api_error(error)
        if classified is not None:
            return classified

    text = str(error)
    if isinstance(error, ItemValidationError):
        return ClassifiedError(ErrorCategory.VALIDATION, text, "VALIDATION_ERROR")
    lowered = text.lower()

    if isinstance(error, (ConnectionError, TimeoutError)) or any(word in lowered for word in _NETWORK_WORDS):
        return ClassifiedError(ErrorCategory.NETWORK, text or type(error).__name__, "NETWORK_ERROR", 2000)
    if any(word in lowered for word in _RATE_LIMIT_WORDS):
        return ClassifiedError(ErrorCategory.RATE_LIMIT, text, "RATE_LIMIT", 5000)
    if any(word in lowered for word in _DUPLICATE_WORDS):
        return ClassifiedError(ErrorCategory.DUPLICATE, text, "DUPLICATE")
    if any(word in lowered for word in _VALIDATION_WORDS):
        return ClassifiedError(ErrorCategory.VALIDATION, text, "VALIDATION_ERROR")
    if any(word in lowered for word in _PERMISSION_WORDS):
        return ClassifiedError(ErrorCategory.PERMISSION, text, "PERMISSION_ERROR")
    return ClassifiedError(ErrorCategory.UNKNOWN, text or type(error).__name__, "UNKNOWN_ERROR", 1000)


def should_retry(category: ErrorCategory, attempt: int, max_retries: int = 3) -> bool:
    """``attempt`` counts retries already made; unknown failures get a single retry."""
    if category in NON_RETRYABLE:
        return False
    if attempt >= max_retries:
        return False
    if category in {ErrorCategory.NETWORK, ErrorCategory.RATE_LIMIT}:
        return True
    return category == ErrorCategory.UNKNOWN and attempt < 1


def retry_delay_ms(
    attempt: int,
    base_ms: int = 1000,
    max_ms: int = 30000,
    *,
    rng: random.Random | None = None,
) -> int:
    """Exponential backoff ``base * 2**attempt`` capped at ``max_ms`` with +/-20% jitter."""
    capped = min(base_ms * (2**attempt), max_ms)
    jitter = capped * 0.2 * ((rng or random).random() * 2 - 1)
    return max(round(capped + jitter), 0)
