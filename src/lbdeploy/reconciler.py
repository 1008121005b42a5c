"""Control loop that keeps every stack file converged.

Each cycle:
1. Discover stack files in the stacks directory
2. Load and validate each stack
3. Deploy the stack in a worker thread, bounded by the pass timeout
4. Wait for the next interval, or less when a pass asked to be requeued

A pass that times out is cancelled through its ReconcileContext: the worker
stops before its next ELBv2 call. Mutations already issued stay applied and
the next pass converges from there.

Circuit breaker: after MAX_CONSECUTIVE_FAILURES failed cycles the loop pauses
for CIRCUIT_BREAKER_RESET_SECONDS.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from .config import Config
from .context import ReconcileContext
from .deployer import StackDeployer
from .errors import RequeueNeededAfter
from .models import Stack
from .stack_loader import StackLoadError, discover_stack_files, load_stack

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes


@dataclass
class ReconcileResult:
    """Result of one pass over one stack file."""

    stack_file: str
    stack: str | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    resource_count: int = 0
    requeue_after: float | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None


class Reconciler:
    """Runs deploy passes for every stack file on an interval."""

    def __init__(
        self,
        config: Config,
        deployer: StackDeployer,
        loader: Callable[[Path], Stack] = load_stack,
    ) -> None:
        self._config = config
        self._deployer = deployer
        self._loader = loader
        self._shutdown_event = asyncio.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

        # Contexts of passes in flight, cancelled on shutdown
        self._active_contexts: set[ReconcileContext] = set()

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    async def run(self) -> None:
        """Run the reconciliation loop until shutdown."""
        logger.info(
            "Starting reconciler",
            extra={
                "cluster_name": self._config.cluster_name,
                "vpc_id": self._config.vpc_id,
                "stacks_dir": str(self._config.stacks_dir),
                "interval_seconds": self._config.reconcile_interval_seconds,
            },
        )

        while not self._shutdown_event.is_set():
            # Circuit breaker check
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    await self._wait(min(remaining, self._config.reconcile_interval_seconds))
                    continue
                logger.info("Circuit breaker reset, resuming reconciliation")
                self._circuit_open_until = None
                self._consecutive_failures = 0

            results = await self.reconcile_all()

            # Requeues are expected waits, not failures
            if any(r.error is not None for r in results):
                self._consecutive_failures += 1
                if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self._circuit_open_until = datetime.now(UTC) + timedelta(
                        seconds=CIRCUIT_BREAKER_RESET_SECONDS
                    )
                    logger.error(
                        "Circuit breaker opened after consecutive failures",
                        extra={
                            "consecutive_failures": self._consecutive_failures,
                            "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                        },
                    )
            else:
                self._consecutive_failures = 0

            await self._wait(next_wait_seconds(results, self._config.reconcile_interval_seconds))

        logger.info("Reconciler shutdown complete")

    def shutdown(self) -> None:
        """Signal the reconciler to stop and cancel passes in flight."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
        for ctx in list(self._active_contexts):
            ctx.cancel()

    async def reconcile_all(self) -> list[ReconcileResult]:
        """Run one pass for every stack file."""
        try:
            stack_files = discover_stack_files(self._config.stacks_dir)
        except StackLoadError as e:
            result = ReconcileResult(stack_file=str(self._config.stacks_dir), error=e)
            result.end_time = datetime.now(UTC)
            self._log_result(result)
            return [result]

        results = []
        for path in stack_files:
            if self._shutdown_event.is_set():
                break
            result = await self.reconcile_file(path)
            self._log_result(result)
            results.append(result)
        return results

    async def reconcile_file(self, path: Path) -> ReconcileResult:
        """Load one stack file and deploy it with the pass timeout."""
        result = ReconcileResult(stack_file=str(path))
        timeout = self._config.pass_timeout_seconds
        ctx = ReconcileContext(timeout_seconds=timeout)
        self._active_contexts.add(ctx)
        try:
            stack = self._loader(path)
            result.stack = str(stack.stack_id)
            result.resource_count = len(stack)
            await self._execute_with_timeout(
                lambda: self._deployer.deploy(stack, ctx), ctx, timeout
            )
        except RequeueNeededAfter as e:
            result.requeue_after = e.delay_seconds
            logger.info(
                "Requeue requested",
                extra={"stack_file": str(path), "reason": e.reason, "delay": e.delay_seconds},
            )
        except Exception as e:
            result.error = e
        finally:
            self._active_contexts.discard(ctx)
            result.end_time = datetime.now(UTC)
        return result

    async def _execute_with_timeout(
        self,
        operation: Callable[[], Any],
        ctx: ReconcileContext,
        timeout_seconds: float,
    ) -> Any:
        """Run a blocking pass in a worker thread with a timeout.

        Raises:
            TimeoutError: If the pass exceeds its timeout. The pass is
                cancelled and stops before its next cloud call.
        """
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, operation),
                timeout=timeout_seconds,
            )
        except TimeoutError:
            ctx.cancel()
            logger.error("Deploy pass timed out", extra={"timeout_seconds": timeout_seconds})
            raise

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except TimeoutError:
            # Normal timeout, continue to next cycle
            pass

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "stack_file": result.stack_file,
            "stack": result.stack,
            "duration_seconds": result.duration_seconds,
            "resource_count": result.resource_count,
        }
        if result.requeue_after is not None:
            extra["requeue_after"] = result.requeue_after

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.error("Reconciliation failed", extra=extra)
        elif result.requeue_after is not None:
            logger.info("Reconciliation incomplete, requeued", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)


def next_wait_seconds(results: list[ReconcileResult], interval: float) -> float:
    """The shortest requeue delay among results, capped at the interval."""
    delays = [r.requeue_after for r in results if r.requeue_after is not None]
    return min([interval, *delays])
