from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from kubernetes.client import ApiException

from dnssync.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 0.1

_RETRYABLE_STATUSES = frozenset({409, 429, 500, 502, 503, 504})


class SyncError(Exception):
    """Base class for failures while converging cluster state."""


class RetryableSyncError(SyncError):
    """The pass failed but a later pass may succeed."""


class RetryExhaustedError(RetryableSyncError):
    """The bounded optimistic-concurrency budget was consumed."""


class PermissionDeniedError(SyncError):
    """The API rejected the request with 401/403; retrying will not help."""


class MalformedResourceError(SyncError):
    """An externally owned object is missing or not in the expected shape."""


class CleanupError(SyncError):
    """One or more teardown steps failed."""

    def __init__(self, failed_steps: list[str]) -> None:
        super().__init__(f"cleanup steps failed: {', '.join(failed_steps)}")
        self.failed_steps = failed_steps


def api_status(exc: BaseException) -> int | None:
    if isinstance(exc, ApiException):
        return exc.status
    return None


def is_not_found(exc: BaseException) -> bool:
    return api_status(exc) == 404


def is_conflict(exc: BaseException) -> bool:
    return api_status(exc) == 409


def is_forbidden(exc: BaseException) -> bool:
    return api_status(exc) in {401, 403}


def is_retryable(exc: BaseException) -> bool:
    return api_status(exc) in _RETRYABLE_STATUSES


def classify_api_exception(exc: ApiException, description: str) -> SyncError:
    """Map an :class:`ApiException` onto the controller's error taxonomy."""
    if is_forbidden(exc):
        return PermissionDeniedError(
            f"access denied while trying to {description} (status={exc.status}); "
            "check controller RBAC"
        )
    if is_not_found(exc):
        return MalformedResourceError(f"object not found while trying to {description}")
    if is_retryable(exc):
        return RetryableSyncError(f"failed to {description}: {exc.status} {exc.reason}")
    return SyncError(f"failed to {description}: {exc.status} {exc.reason}")


@dataclass(frozen=True)
class UpdateOutcome(Generic[T]):
    """Result of :func:`optimistic_update`.

    ``changed`` is False when the freshly read object already matched the
    desired state and no write was issued.
    """

    changed: bool
    attempts: int
    value: T | None


def optimistic_update(
    read: Callable[[], T | None],
    mutate: Callable[[T | None], T | None],
    write: Callable[[T | None, T], T | None],
    *,
    description: str,
    resource: str,
    attempts: int = DEFAULT_ATTEMPTS,
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    logger: logging.Logger | None = None,
    retry_not_found: bool = False,
) -> UpdateOutcome[T]:
    """Read, compute and write with bounded retries on stale writes.

    ``read`` returns the current object (or ``None`` when it does not exist),
    ``mutate`` returns the desired object or ``None`` when nothing needs to
    change, and ``write`` persists the desired object given the object it was
    derived from.  Every attempt starts from a fresh ``read`` so a conflict
    never replays a stale ``resourceVersion``.

    401/403 are raised immediately as :class:`PermissionDeniedError`.
    Conflicts and transient server errors are retried with a fixed backoff;
    running out of attempts raises :class:`RetryExhaustedError`.  With
    ``retry_not_found`` a 404 from ``write`` counts as a stale write too, so
    an object deleted between read and replace is re-read and recreated.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    log = logger or LOGGER

    last_error: ApiException | None = None
    for attempt in range(1, attempts + 1):
        current: T | None = None
        try:
            current = read()
            desired = mutate(current)
            if desired is None:
                return UpdateOutcome(changed=False, attempts=attempt, value=current)
            written = write(current, desired)
            return UpdateOutcome(changed=True, attempts=attempt, value=written)
        except ApiException as exc:
            vanished = retry_not_found and current is not None and is_not_found(exc)
            if not vanished and not is_retryable(exc):
                raise classify_api_exception(exc, description) from exc
            last_error = exc
            METRICS.conflict_retries_total.labels(resource=resource).inc()
            if attempt == attempts:
                break
            log.info(
                "Attempt %d/%d to %s failed with status %s; retrying with a fresh read",
                attempt,
                attempts,
                description,
                exc.status,
            )
            sleep(backoff_seconds)

    raise RetryExhaustedError(
        f"failed to {description} after {attempts} attempts: "
        f"{last_error.status if last_error else 'unknown'} "
        f"{last_error.reason if last_error else ''}".rstrip()
    ) from last_error
