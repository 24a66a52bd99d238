"""Fixed-interval retry executor."""

from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

from crc_machine.exceptions import ManagerError, RetriableError
from crc_machine.models import RetryPolicy
from crc_machine.utils import log

T = TypeVar("T")


def is_retriable(exc: BaseException) -> bool:
    return isinstance(exc, RetriableError)


def retry_after(
    attempts: int,
    action: Callable[[], T],
    interval: float,
    retriable: Callable[[BaseException], bool] = is_retriable,
) -> T:
    """Call action up to attempts times, sleeping interval seconds between tries.

    Only errors accepted by ``retriable`` are retried; anything else propagates
    immediately. When every attempt fails the last cause is raised as a plain
    ManagerError so the retriable marker never escapes.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    last: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return action()
        except Exception as exc:
            if not retriable(exc):
                raise
            last = exc
            log("DEBUG", f"Attempt {attempt}/{attempts} failed: {exc}")
        if attempt < attempts:
            time.sleep(interval)
    cause = last.cause if isinstance(last, RetriableError) and last.cause is not None else last
    raise ManagerError(f"gave up after {attempts} attempts: {cause}") from last


def retry_with_policy(policy: RetryPolicy, action: Callable[[], T]) -> T:
    return retry_after(policy.attempts, action, policy.interval)
