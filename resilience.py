from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

OVERLOADED = "overloaded"
RATE_LIMITED = "rate_limited"
OTHER = "other"

RETRYABLE_CLASSES = {OVERLOADED, RATE_LIMITED}
OVERLOADED_STATUS_CODES = {503, 529}
RATE_LIMITED_STATUS_CODES = {429}


class RemoteServiceError(RuntimeError):
    """Raised when a remote HTTP service answers with an error status."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _status_code_of(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def classify_error(exc: BaseException) -> str:
    status = _status_code_of(exc)
    if status in OVERLOADED_STATUS_CODES:
        return OVERLOADED
    if status in RATE_LIMITED_STATUS_CODES:
        return RATE_LIMITED

    text = str(exc).lower()
    if "overloaded" in text or "service unavailable" in text:
        return OVERLOADED
    if any(token in text for token in ("rate limit", "resource exhausted", "quota")):
        return RATE_LIMITED
    return OTHER


def backoff_delay(initial_delay: float, attempt: int) -> float:
    return initial_delay * (2**attempt) * random.uniform(0.8, 1.2)


def retry_with_backoff(
    fn: Callable[[Optional[str]], T],
    *,
    operation_name: str,
    retries: int = 3,
    initial_delay: float = 1.0,
    backup_backend: Optional[str] = None,
) -> T:
    """Run ``fn`` retrying overload/rate-limit failures with exponential backoff.

    ``fn`` receives the backend override: ``None`` for the primary backend,
    then ``backup_backend`` once an overloaded failure has been seen.
    Non-retryable errors and the error of the final attempt are re-raised as is.
    """
    backend_override: Optional[str] = None
    for attempt in range(retries + 1):
        try:
            return fn(backend_override)
        except Exception as exc:
            error_class = classify_error(exc)
            if error_class not in RETRYABLE_CLASSES or attempt >= retries:
                raise

            if error_class == OVERLOADED and backup_backend and backend_override is None:
                backend_override = backup_backend
                LOGGER.warning(
                    "%s backend overloaded, switching to backup | backup=%s",
                    operation_name,
                    backup_backend,
                )

            delay = backoff_delay(initial_delay, attempt)
            LOGGER.warning(
                "%s failed (%s/%s) | class=%s backend=%s error=%s. Retry in %.2fs",
                operation_name,
                attempt + 1,
                retries,
                error_class,
                backend_override or "primary",
                exc,
                delay,
            )
            time.sleep(delay)

    raise RuntimeError(f"{operation_name} exhausted retries")  # pragma: no cover


def describe_error(exc: Any) -> str:
    return f"{type(exc).__name__}: {exc}"[:300]


__all__ = [
    "OVERLOADED",
    "OTHER",
    "RATE_LIMITED",
    "RemoteServiceError",
    "backoff_delay",
    "classify_error",
    "describe_error",
    "retry_with_backoff",
]
