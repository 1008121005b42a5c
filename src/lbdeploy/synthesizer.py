"""Shared pieces of the per-kind synthesizers."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Protocol, TypeVar

from .errors import ReconcileCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Synthesizer(Protocol):
    """Converges one resource kind of a stack.

    ``synthesize`` runs in dependency order (target groups first), and
    ``post_synthesize`` runs in reverse order once every kind has been
    synthesized, for deletions that must wait for referencing resources to
    go away.
    """

    def synthesize(self) -> None: ...

    def post_synthesize(self) -> None: ...


def run_each(
    items: Iterable[T],
    operation: Callable[[T], None],
    *,
    phase: str,
    kind: str,
    describe: Callable[[T], str] = repr,
) -> None:
    """Run ``operation`` for every item, isolating failures per item.

    Every item is attempted even when an earlier one fails. The first
    failure is re-raised once all items have been attempted. Cancellation
    stops the phase immediately.
    """
    first_error: Exception | None = None
    failed = 0
    for item in items:
        try:
            operation(item)
        except ReconcileCancelledError:
            raise
        except Exception as e:
            failed += 1
            logger.error(
                f"failed to {phase} {kind}",
                extra={"resource": describe(item), "error": str(e), "error_type": type(e).__name__},
            )
            if first_error is None:
                first_error = e
    if first_error is not None:
        if failed > 1:
            logger.error(
                f"{phase} phase had failures",
                extra={"kind": kind, "failed": failed},
            )
        raise first_error


def run_phases(*phases: Callable[[], None]) -> None:
    """Run every phase even when an earlier one fails.

    The first failure is re-raised once all phases have run. Cancellation
    stops immediately.
    """
    first_error: Exception | None = None
    for phase in phases:
        try:
            phase()
        except ReconcileCancelledError:
            raise
        except Exception as e:
            logger.error(
                "synthesis phase failed",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            if first_error is None:
                first_error = e
    if first_error is not None:
        raise first_error
