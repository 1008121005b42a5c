"""Bounded polling for eventual consistency.

Waits are expressed as poll-until-predicate-or-timeout. A timed out wait
raises RequeueNeededAfter so the caller can requeue the stack instead of
blocking indefinitely or treating the wait as a hard failure.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from .context import ReconcileContext
from .errors import RequeueNeededAfter

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Delay suggested to the caller when a wait times out
DEFAULT_REQUEUE_DELAY_SECONDS = 15.0


def poll_until(
    predicate: Callable[[], bool],
    *,
    interval: float,
    timeout: float,
    reason: str,
    ctx: ReconcileContext | None = None,
    requeue_delay: float = DEFAULT_REQUEUE_DELAY_SECONDS,
) -> None:
    """Call ``predicate`` every ``interval`` seconds until it returns True.

    The predicate is evaluated immediately, then after each interval.
    Exceptions raised by the predicate propagate.

    Raises:
        RequeueNeededAfter: If the predicate is still False after ``timeout``.
    """
    ctx = ctx or ReconcileContext.background()
    deadline = time.monotonic() + timeout
    while True:
        ctx.check()
        if predicate():
            return
        if time.monotonic() + interval > deadline:
            logger.warning(
                "timed out waiting", extra={"reason": reason, "timeout_seconds": timeout}
            )
            raise RequeueNeededAfter(reason, requeue_delay)
        ctx.sleep(interval)


def retry_on_error(
    operation: Callable[[], T],
    *,
    is_retryable: Callable[[BaseException], bool],
    interval: float,
    timeout: float,
    reason: str,
    ctx: ReconcileContext | None = None,
    requeue_delay: float = DEFAULT_REQUEUE_DELAY_SECONDS,
) -> T:
    """Run ``operation`` and retry it while it fails with a retryable error.

    Non-retryable errors propagate immediately.

    Raises:
        RequeueNeededAfter: If the operation keeps failing with a retryable
            error until ``timeout``. The last error is chained as the cause.
    """
    ctx = ctx or ReconcileContext.background()
    deadline = time.monotonic() + timeout
    while True:
        ctx.check()
        try:
            return operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            if time.monotonic() + interval > deadline:
                logger.warning(
                    "retries exhausted",
                    extra={"reason": reason, "timeout_seconds": timeout, "error": str(e)},
                )
                raise RequeueNeededAfter(reason, requeue_delay) from e
            logger.debug("retrying after error", extra={"reason": reason, "error": str(e)})
        ctx.sleep(interval)
