"""Tests for the reconciliation loop."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

import pytest

from lbdeploy.config import Config
from lbdeploy.context import ReconcileContext
from lbdeploy.errors import ReconcileCancelledError, RequeueNeededAfter
from lbdeploy.models import Stack
from lbdeploy.reconciler import (
    MAX_CONSECUTIVE_FAILURES,
    Reconciler,
    ReconcileResult,
    next_wait_seconds,
)
from lbdeploy.stack_loader import StackLoadError
from stack_builders import new_stack, web_stack


class FakeDeployer:
    """Records deploy calls and runs a configurable behavior."""

    def __init__(self, behavior: Callable[[Stack, ReconcileContext], None] | None = None) -> None:
        self.behavior = behavior
        self.deployed: list[str] = []

    def deploy(self, stack: Stack, ctx: ReconcileContext | None = None) -> None:
        self.deployed.append(str(stack.stack_id))
        if self.behavior is not None:
            self.behavior(stack, ctx or ReconcileContext.background())


def write_stack_file(config: Config, name: str = "frontend.yaml") -> Path:
    path = config.stacks_dir / name
    path.write_text("name: frontend\nnamespace: shop\nresources: []\n")
    return path


def failing(stack: Stack, ctx: ReconcileContext) -> None:
    raise RuntimeError("elbv2 unavailable")


class TestReconcileFile:
    """Tests for a single pass over one stack file."""

    @pytest.mark.asyncio
    async def test_success(self, config: Config) -> None:
        path = write_stack_file(config)
        deployer = FakeDeployer()
        reconciler = Reconciler(config, deployer, loader=lambda p: web_stack())

        result = await reconciler.reconcile_file(path)

        assert result.success
        assert result.stack == "shop/frontend"
        assert result.resource_count == 4
        assert result.requeue_after is None
        assert deployer.deployed == ["shop/frontend"]

    @pytest.mark.asyncio
    async def test_requeue_is_not_an_error(self, config: Config) -> None:
        def requeue(stack: Stack, ctx: ReconcileContext) -> None:
            raise RequeueNeededAfter("load balancer to be active", 15.0)

        reconciler = Reconciler(config, FakeDeployer(requeue), loader=lambda p: new_stack())

        result = await reconciler.reconcile_file(write_stack_file(config))

        assert result.success
        assert result.requeue_after == 15.0

    @pytest.mark.asyncio
    async def test_deploy_error_recorded(self, config: Config) -> None:
        reconciler = Reconciler(config, FakeDeployer(failing), loader=lambda p: new_stack())

        result = await reconciler.reconcile_file(write_stack_file(config))

        assert not result.success
        assert isinstance(result.error, RuntimeError)
        assert result.end_time is not None

    @pytest.mark.asyncio
    async def test_load_error_recorded(self, config: Config) -> None:
        """Test that an invalid stack file never reaches the deployer."""
        path = config.stacks_dir / "broken.yaml"
        path.write_text("name: [unclosed")
        deployer = FakeDeployer()
        reconciler = Reconciler(config, deployer)

        result = await reconciler.reconcile_file(path)

        assert isinstance(result.error, StackLoadError)
        assert deployer.deployed == []

    @pytest.mark.asyncio
    async def test_timeout_cancels_pass(self, config: Config) -> None:
        """Test that a pass exceeding its timeout is cancelled."""
        seen: list[ReconcileContext] = []

        def slow(stack: Stack, ctx: ReconcileContext) -> None:
            seen.append(ctx)
            ctx.sleep(30)

        config = replace(config, pass_timeout_seconds=1)
        reconciler = Reconciler(config, FakeDeployer(slow), loader=lambda p: new_stack())

        result = await reconciler.reconcile_file(write_stack_file(config))

        assert isinstance(result.error, TimeoutError)
        assert seen[0].cancelled

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pass_in_flight(self, config: Config) -> None:
        started = threading.Event()

        def blocking(stack: Stack, ctx: ReconcileContext) -> None:
            started.set()
            ctx.sleep(30)

        reconciler = Reconciler(config, FakeDeployer(blocking), loader=lambda p: new_stack())
        task = asyncio.create_task(reconciler.reconcile_file(write_stack_file(config)))
        await asyncio.get_running_loop().run_in_executor(None, started.wait, 5)

        reconciler.shutdown()
        result = await task

        assert isinstance(result.error, ReconcileCancelledError)


class TestReconcileAll:
    """Tests for a pass over the stacks directory."""

    @pytest.mark.asyncio
    async def test_every_file_deployed_in_order(self, config: Config) -> None:
        write_stack_file(config, "b.yaml")
        write_stack_file(config, "a.yaml")
        loaded: list[str] = []

        def loader(path: Path) -> Stack:
            loaded.append(path.name)
            return new_stack(path.stem)

        reconciler = Reconciler(config, FakeDeployer(), loader=loader)

        results = await reconciler.reconcile_all()

        assert loaded == ["a.yaml", "b.yaml"]
        assert all(r.success for r in results)

    @pytest.mark.asyncio
    async def test_missing_stacks_dir(self, config: Config, tmp_path: Path) -> None:
        config = replace(config, stacks_dir=tmp_path / "missing")
        reconciler = Reconciler(config, FakeDeployer())

        results = await reconciler.reconcile_all()

        assert len(results) == 1
        assert isinstance(results[0].error, StackLoadError)

    @pytest.mark.asyncio
    async def test_empty_stacks_dir(self, config: Config) -> None:
        reconciler = Reconciler(config, FakeDeployer())

        assert await reconciler.reconcile_all() == []


class TestRunLoop:
    """Tests for the run loop and its circuit breaker."""

    @pytest.mark.asyncio
    async def test_circuit_breaker_opens(self, config: Config) -> None:
        """Test that consecutive failures stop deploy passes."""
        write_stack_file(config)
        deployer = FakeDeployer(failing)
        reconciler = Reconciler(config, deployer, loader=lambda p: new_stack())
        waits: list[float] = []

        async def fake_wait(seconds: float) -> None:
            waits.append(seconds)
            if len(waits) > MAX_CONSECUTIVE_FAILURES:
                reconciler.shutdown()

        reconciler._wait = fake_wait  # type: ignore[method-assign]

        await reconciler.run()

        assert len(deployer.deployed) == MAX_CONSECUTIVE_FAILURES
        assert reconciler._circuit_open_until is not None

    @pytest.mark.asyncio
    async def test_requeue_shortens_wait(self, config: Config) -> None:
        def requeue(stack: Stack, ctx: ReconcileContext) -> None:
            raise RequeueNeededAfter("listener rules", 20.0)

        write_stack_file(config)
        reconciler = Reconciler(config, FakeDeployer(requeue), loader=lambda p: new_stack())
        waits: list[float] = []

        async def fake_wait(seconds: float) -> None:
            waits.append(seconds)
            reconciler.shutdown()

        reconciler._wait = fake_wait  # type: ignore[method-assign]

        await reconciler.run()

        assert waits == [20.0]
        assert reconciler._consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, config: Config) -> None:
        write_stack_file(config)
        outcomes = iter([failing, None])

        def flaky(stack: Stack, ctx: ReconcileContext) -> None:
            behavior = next(outcomes)
            if behavior is not None:
                behavior(stack, ctx)

        reconciler = Reconciler(config, FakeDeployer(flaky), loader=lambda p: new_stack())
        failures: list[int] = []

        async def fake_wait(seconds: float) -> None:
            failures.append(reconciler._consecutive_failures)
            if len(failures) == 2:
                reconciler.shutdown()

        reconciler._wait = fake_wait  # type: ignore[method-assign]

        await reconciler.run()

        assert failures == [1, 0]


class TestNextWaitSeconds:
    """Tests for next_wait_seconds."""

    def test_interval_without_requeues(self) -> None:
        results = [ReconcileResult(stack_file="a.yaml")]

        assert next_wait_seconds(results, 300) == 300

    def test_shortest_requeue_wins(self) -> None:
        results = [
            ReconcileResult(stack_file="a.yaml", requeue_after=45.0),
            ReconcileResult(stack_file="b.yaml", requeue_after=10.0),
            ReconcileResult(stack_file="c.yaml"),
        ]

        assert next_wait_seconds(results, 300) == 10.0

    def test_capped_at_interval(self) -> None:
        results = [ReconcileResult(stack_file="a.yaml", requeue_after=900.0)]

        assert next_wait_seconds(results, 300) == 300
