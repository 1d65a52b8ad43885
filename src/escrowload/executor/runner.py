"""Load runner: drives many workflow cycles under rate pacing."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console
from rich.live import Live

from escrowload.client.base import RemoteServiceClient
from escrowload.client.receipt import ErrorClass
from escrowload.errors import AggregationError, ConfigError
from escrowload.executor.cycle import CycleExecutor
from escrowload.executor.pacing import RateController
from escrowload.executor.result import CycleResult
from escrowload.identity import IdentityPool
from escrowload.metrics.aggregator import AggregateReport, MetricsAggregator
from escrowload.metrics.display import generate_failure_table, generate_stats_table
from escrowload.models.config import RunConfig
from escrowload.models.workflow import WorkflowDefinition
from escrowload.runtime import shutdown_executor
from escrowload.sink import ResultSink

console = Console()
logger = logging.getLogger(__name__)

PROGRESS_EVERY = 10


class LoadRunner:
    """Runs ``cycle_count`` cycles of a workflow against one remote service.

    Only startup problems (invalid workflow, missing identities, unreachable
    service) and corrupted statistics propagate; anything a single cycle
    raises is turned into a failed CycleResult and the run goes on.
    """

    def __init__(
        self,
        client: RemoteServiceClient,
        config: RunConfig | None = None,
        sink: ResultSink | None = None,
        rate_controller: RateController | None = None,
        run_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.config = config or RunConfig()
        self.sink = sink
        self.rate_controller = rate_controller or RateController(self.config.min_delay_ms)
        self.run_id = run_id or uuid.uuid4().hex[:8]
        self._clock = clock

        self._stop_event = asyncio.Event()
        self.aggregator: MetricsAggregator | None = None
        self.report_path: Path | None = None
        self._cycles_started = 0

    def request_stop(self) -> None:
        """Stop starting new cycles; in-flight cycles are allowed to finish."""
        self._stop_event.set()

    @property
    def should_stop(self) -> bool:
        return self._stop_event.is_set()

    async def setup(self, workflow: WorkflowDefinition, pool: IdentityPool) -> IdentityPool:
        """Check every startup precondition and snapshot identity balances."""
        # assign binds every configured role, not just the ones the workflow uses.
        pool.require(workflow.roles | pool.configured_roles)
        workflow.validate(pool.roles)
        await self.client.ping()

        balances = {}
        for role in sorted(workflow.roles):
            for identity in pool.identities(role):
                balances[identity.address] = await self.client.get_balance(identity.address)
        pool = pool.with_balances(balances)

        for role in sorted(workflow.roles):
            for identity in pool.identities(role):
                balance = "unknown" if identity.balance is None else f"{identity.balance:,}"
                logger.info(f"Identity [{role}] {identity.address} (balance {balance})")
        return pool

    async def teardown(self) -> None:
        await self.client.close()
        shutdown_executor(wait=False, cancel_futures=True)

    async def _run_cycle(
        self,
        executor: CycleExecutor,
        workflow: WorkflowDefinition,
        pool: IdentityPool,
        cycle_index: int,
    ) -> CycleResult:
        bindings: dict[str, str] = {}
        try:
            async with pool.lease(cycle_index) as identities:
                bindings = {role: i.address for role, i in identities.items()}
                return await executor.run(workflow, identities, cycle_index)
        except Exception as e:
            logger.exception(f"Cycle {cycle_index + 1} crashed: {e}")
            return CycleResult(
                cycle_index=cycle_index,
                entity_id=None,
                bindings=bindings,
                outcomes=(),
                success=False,
                failure_class=ErrorClass.UNKNOWN,
            )

    def _absorb(self, aggregator: MetricsAggregator, result: CycleResult, cycle_count: int) -> None:
        aggregator.absorb(result)
        number = result.cycle_index + 1
        if result.success:
            logger.debug(f"Cycle {number}/{cycle_count} completed: {result.entity_id}")
        else:
            failed = result.failed_step
            where = failed.name if failed else "-"
            failure = (result.failure_class or ErrorClass.UNKNOWN).value
            reason = failed.error_message if failed else failure
            logger.warning(f"Cycle {number}/{cycle_count} failed at {where} [{failure}]: {reason}")

        done = aggregator.absorbed
        if done % PROGRESS_EVERY == 0 or done == cycle_count:
            report = aggregator.snapshot()
            logger.info(
                f"Progress {done}/{cycle_count} (succeeded: {report.succeeded}, "
                f"failed: {report.failed})"
            )

    async def _wait(self, delay_ms: float) -> bool:
        """Sleep for ``delay_ms``; return True if a stop was requested meanwhile."""
        if delay_ms <= 0:
            return self.should_stop
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay_ms / 1000)
            return True
        except asyncio.TimeoutError:
            return False

    async def _drive(
        self,
        workflow: WorkflowDefinition,
        pool: IdentityPool,
        aggregator: MetricsAggregator,
        cycle_count: int,
        target_rate: float,
    ) -> None:
        executor = CycleExecutor(
            self.client,
            state_source=self.config.state_source,
            run_id=self.run_id,
        )
        semaphore = asyncio.Semaphore(self.config.concurrency)
        tasks: list[asyncio.Task] = []
        last_start: float | None = None

        async def cycle_task(cycle_index: int) -> None:
            try:
                result = await self._run_cycle(executor, workflow, pool, cycle_index)
                self._absorb(aggregator, result, cycle_count)
            except AggregationError:
                self.request_stop()
                raise
            finally:
                semaphore.release()

        for cycle_index in range(cycle_count):
            if self.should_stop:
                break
            await semaphore.acquire()

            if last_start is not None:
                since_last_ms = (self._clock() - last_start) * 1000
                delay = self.rate_controller.next_delay(since_last_ms, target_rate)
                if await self._wait(delay):
                    semaphore.release()
                    break
            if self.should_stop:
                semaphore.release()
                break

            last_start = self._clock()
            self._cycles_started += 1
            tasks.append(asyncio.create_task(cycle_task(cycle_index)))

        if self.should_stop and self._cycles_started < cycle_count:
            logger.info(
                f"Stop requested after {self._cycles_started} cycle(s); "
                f"waiting for in-flight cycles"
            )
        if tasks:
            try:
                await asyncio.gather(*tasks)
            except AggregationError:
                for task in tasks:
                    task.cancel()
                raise

    async def _update_display(
        self,
        live: Live,
        aggregator: MetricsAggregator,
        title: str,
        cycle_count: int,
        started: float,
    ) -> None:
        while True:
            report = aggregator.snapshot(elapsed_seconds=self._clock() - started)
            live.update(generate_stats_table(report, title, cycle_count))
            await asyncio.sleep(0.5)

    async def run(
        self,
        workflow: WorkflowDefinition,
        pool: IdentityPool,
        cycle_count: int,
        target_rate: float,
    ) -> AggregateReport:
        """Run the cycles; assumes ``setup`` already passed."""
        aggregator = MetricsAggregator(workflow.step_names)
        self.aggregator = aggregator
        self._cycles_started = 0
        started_at = datetime.now(timezone.utc)
        started = self._clock()
        title = f"Workflow: {workflow.name} (run {self.run_id})"
        logger.info(
            f"Run {self.run_id}: workflow '{workflow.name}' ({len(workflow)} steps), "
            f"{cycle_count} cycles at {target_rate:g}/s, concurrency {self.config.concurrency}"
        )

        if self.config.show_progress:
            display: contextlib.AbstractContextManager = Live(
                generate_stats_table(aggregator.snapshot(), title, cycle_count),
                refresh_per_second=4,
                console=console,
            )
        else:
            display = contextlib.nullcontext()

        with display as live:
            updater = None
            if live is not None:
                updater = asyncio.create_task(
                    self._update_display(live, aggregator, title, cycle_count, started)
                )
            try:
                await self._drive(workflow, pool, aggregator, cycle_count, target_rate)
            finally:
                if updater is not None:
                    updater.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await updater
                    live.update(
                        generate_stats_table(
                            aggregator.snapshot(elapsed_seconds=self._clock() - started),
                            title,
                            cycle_count,
                        )
                    )

        elapsed = self._clock() - started
        metadata = {
            "run_id": self.run_id,
            "started_at": started_at.isoformat(),
            "workflow": workflow.to_dict(),
            "config": {
                **self.config.to_dict(),
                "cycle_count": cycle_count,
                "target_rate": target_rate,
            },
            "cycles_started": self._cycles_started,
            "stopped_early": self._cycles_started < cycle_count,
        }
        return aggregator.snapshot(elapsed_seconds=elapsed, metadata=metadata)

    async def execute(
        self,
        workflow: WorkflowDefinition,
        pool: IdentityPool,
        cycle_count: int | None = None,
        target_rate: float | None = None,
    ) -> AggregateReport:
        """Validate, run, persist. Returns the final report."""
        cycle_count = self.config.cycle_count if cycle_count is None else cycle_count
        target_rate = self.config.target_rate if target_rate is None else target_rate
        if cycle_count < 1:
            raise ConfigError("cycle_count must be at least 1")
        if target_rate <= 0:
            raise ConfigError("target_rate must be greater than 0")
        self._stop_event.clear()

        try:
            pool = await self.setup(workflow, pool)
            report = await self.run(workflow, pool, cycle_count, target_rate)
        finally:
            await self.teardown()

        if self.sink is not None:
            started_at = datetime.fromisoformat(report.metadata["started_at"])
            self.report_path = self.sink.write(report, started_at)
        return report

    async def execute_with_signals(
        self,
        workflow: WorkflowDefinition,
        pool: IdentityPool,
        cycle_count: int | None = None,
        target_rate: float | None = None,
    ) -> AggregateReport:
        """Execute with SIGINT/SIGTERM mapped to a graceful stop."""
        loop = asyncio.get_running_loop()

        def signal_handler():
            console.print("\n[yellow]Shutting down gracefully, finishing in-flight cycles...[/yellow]")
            self.request_stop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        try:
            return await self.execute(workflow, pool, cycle_count, target_rate)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)


def print_summary(report: AggregateReport, target_rate: float | None = None) -> None:
    console.print()
    console.print(generate_stats_table(report, "Load test summary"))
    failures = generate_failure_table(report)
    if failures is not None:
        console.print(failures)

    elapsed = report.elapsed_seconds or 0.0
    console.print(f"\n[bold]Elapsed:[/bold] {elapsed:.2f}s")
    console.print(
        f"[bold]Cycles:[/bold] {report.total_cycles} "
        f"([green]{report.succeeded} ok[/green], [red]{report.failed} failed[/red], "
        f"{report.success_rate * 100:.1f}% success)"
    )
    line = f"[bold]Throughput:[/bold] {report.throughput:.2f} successful cycles/s"
    if target_rate:
        line += f" (target {target_rate:g}/s, {report.throughput / target_rate * 100:.0f}%)"
    console.print(line)
    if report.succeeded:
        console.print(f"[bold]Avg cost per successful cycle:[/bold] {report.avg_cost_per_cycle:,.0f}")
        console.print(
            f"[bold]Cycle time:[/bold] avg {report.avg_cycle_ms:,.1f} ms, "
            f"min {report.min_cycle_ms:,.1f} ms, max {report.max_cycle_ms:,.1f} ms, "
            f"stddev {report.stddev_cycle_ms:,.1f} ms"
        )
