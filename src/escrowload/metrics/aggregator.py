"""Running statistics over cycle results."""

from __future__ import annotations

import math
import threading
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from escrowload.client.receipt import ErrorClass
from escrowload.errors import AggregationError
from escrowload.executor.result import CycleResult, StepStatus


def _to_us(duration_ms: float) -> int:
    return round(duration_ms * 1000)


@dataclass
class _StepCounters:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    total_cost: int = 0
    min_cost: int | None = None
    max_cost: int | None = None
    total_duration_us: int = 0
    min_duration_us: int | None = None
    max_duration_us: int | None = None

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed

    def add(self, cost: int, duration_us: int) -> None:
        self.total_cost += cost
        self.min_cost = cost if self.min_cost is None else min(self.min_cost, cost)
        self.max_cost = cost if self.max_cost is None else max(self.max_cost, cost)
        self.total_duration_us += duration_us
        self.min_duration_us = (
            duration_us if self.min_duration_us is None else min(self.min_duration_us, duration_us)
        )
        self.max_duration_us = (
            duration_us if self.max_duration_us is None else max(self.max_duration_us, duration_us)
        )


@dataclass(frozen=True)
class StepStats:
    """Statistics of one step over the attempted executions of it."""

    name: str
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    total_cost: int = 0
    avg_cost: float = 0.0
    min_cost: int | None = None
    max_cost: int | None = None
    avg_duration_ms: float = 0.0
    min_duration_ms: float | None = None
    max_duration_ms: float | None = None

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.attempted if self.attempted else 0.0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_cost": self.total_cost,
            "avg_cost": self.avg_cost,
            "min_cost": self.min_cost,
            "max_cost": self.max_cost,
            "avg_duration_ms": self.avg_duration_ms,
            "min_duration_ms": self.min_duration_ms,
            "max_duration_ms": self.max_duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict) -> StepStats:
        return cls(**data)


@dataclass(frozen=True)
class AggregateReport:
    """Snapshot of everything measured so far."""

    total_cycles: int = 0
    succeeded: int = 0
    failed: int = 0
    elapsed_seconds: float | None = None
    steps: dict[str, StepStats] = field(default_factory=dict)
    failures: dict[str, dict[str, int]] = field(default_factory=dict)
    cycle_failures: dict[str, int] = field(default_factory=dict)
    skipped_steps: int = 0
    total_cost: int = 0
    avg_cycle_ms: float | None = None
    min_cycle_ms: float | None = None
    max_cycle_ms: float | None = None
    stddev_cycle_ms: float | None = None
    cycles: tuple[CycleResult, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.total_cycles if self.total_cycles else 0.0

    @property
    def throughput(self) -> float:
        """Successful cycles per second of elapsed wall time."""
        if not self.elapsed_seconds:
            return 0.0
        return self.succeeded / self.elapsed_seconds

    @property
    def avg_cost_per_cycle(self) -> float:
        return self.total_cost / self.succeeded if self.succeeded else 0.0

    def to_dict(self) -> dict:
        return {
            "metadata": self.metadata,
            "summary": {
                "total_cycles": self.total_cycles,
                "succeeded": self.succeeded,
                "failed": self.failed,
                "success_rate": self.success_rate,
                "elapsed_seconds": self.elapsed_seconds,
                "throughput": self.throughput,
                "skipped_steps": self.skipped_steps,
                "total_cost": self.total_cost,
            },
            "cycle_duration": {
                "avg_ms": self.avg_cycle_ms,
                "min_ms": self.min_cycle_ms,
                "max_ms": self.max_cycle_ms,
                "stddev_ms": self.stddev_cycle_ms,
            },
            "steps": [stats.to_dict() for stats in self.steps.values()],
            "failures": self.failures,
            "cycle_failures": self.cycle_failures,
            "cycles": [cycle.to_dict() for cycle in self.cycles],
        }

    @classmethod
    def from_dict(cls, data: dict) -> AggregateReport:
        summary = data["summary"]
        durations = data.get("cycle_duration") or {}
        return cls(
            total_cycles=summary["total_cycles"],
            succeeded=summary["succeeded"],
            failed=summary["failed"],
            elapsed_seconds=summary.get("elapsed_seconds"),
            steps={s["name"]: StepStats.from_dict(s) for s in data.get("steps", [])},
            failures={k: dict(v) for k, v in (data.get("failures") or {}).items()},
            cycle_failures=dict(data.get("cycle_failures") or {}),
            skipped_steps=summary.get("skipped_steps", 0),
            total_cost=summary.get("total_cost", 0),
            avg_cycle_ms=durations.get("avg_ms"),
            min_cycle_ms=durations.get("min_ms"),
            max_cycle_ms=durations.get("max_ms"),
            stddev_cycle_ms=durations.get("stddev_ms"),
            cycles=tuple(CycleResult.from_dict(c) for c in data.get("cycles", [])),
            metadata=data.get("metadata") or {},
        )

    @classmethod
    def from_cycles(
        cls,
        step_names: Iterable[str],
        cycles: Iterable[CycleResult],
        elapsed_seconds: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AggregateReport:
        """Recompute a report from raw cycle results."""
        aggregator = MetricsAggregator(step_names)
        for cycle in cycles:
            aggregator.absorb(cycle)
        return aggregator.snapshot(elapsed_seconds=elapsed_seconds, metadata=metadata)


class MetricsAggregator:
    """Accumulates cycle results into per-step counters.

    ``absorb`` may be called from several tasks or threads; counters are
    guarded by a lock. Every counter is a sum, min or max over integers, so the
    snapshot does not depend on the order cycles were absorbed in.
    """

    def __init__(self, step_names: Iterable[str]):
        self._step_names = list(step_names)
        self._lock = threading.Lock()
        self._steps = {name: _StepCounters() for name in self._step_names}
        self._failures: dict[str, Counter[str]] = {name: Counter() for name in self._step_names}
        self._cycle_failures: Counter[str] = Counter()
        self._cycles: dict[int, CycleResult] = {}
        self._succeeded = 0
        self._failed = 0
        self._total_cost = 0
        # End-to-end durations of successful cycles.
        self._cycle_us_total = 0
        self._cycle_us_squares = 0
        self._cycle_us_min: int | None = None
        self._cycle_us_max: int | None = None

    def absorb(self, cycle: CycleResult) -> None:
        unknown = [o.name for o in cycle.outcomes if o.name not in self._steps]
        if unknown:
            raise AggregationError(
                f"Cycle {cycle.cycle_index} reports unknown step(s): {', '.join(unknown)}"
            )

        with self._lock:
            if cycle.cycle_index in self._cycles:
                raise AggregationError(f"Cycle {cycle.cycle_index} absorbed twice")
            self._cycles[cycle.cycle_index] = cycle

            if cycle.success:
                self._succeeded += 1
                cycle_us = sum(_to_us(o.duration_ms) for o in cycle.outcomes)
                self._cycle_us_total += cycle_us
                self._cycle_us_squares += cycle_us * cycle_us
                if self._cycle_us_min is None or cycle_us < self._cycle_us_min:
                    self._cycle_us_min = cycle_us
                if self._cycle_us_max is None or cycle_us > self._cycle_us_max:
                    self._cycle_us_max = cycle_us
            else:
                self._failed += 1
                failure_class = cycle.failure_class or ErrorClass.UNKNOWN
                self._cycle_failures[failure_class.value] += 1

            for outcome in cycle.outcomes:
                counters = self._steps[outcome.name]
                if outcome.status == StepStatus.SKIPPED:
                    counters.skipped += 1
                    continue
                if outcome.status == StepStatus.SUCCEEDED:
                    counters.succeeded += 1
                else:
                    counters.failed += 1
                    error_class = outcome.error_class or ErrorClass.UNKNOWN
                    self._failures[outcome.name][error_class.value] += 1
                counters.add(outcome.cost, _to_us(outcome.duration_ms))
                self._total_cost += outcome.cost

    @property
    def absorbed(self) -> int:
        return len(self._cycles)

    def snapshot(
        self,
        elapsed_seconds: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AggregateReport:
        with self._lock:
            steps = {name: self._project(name, c) for name, c in self._steps.items()}
            failures = {
                name: dict(sorted(counter.items()))
                for name, counter in self._failures.items()
                if counter
            }
            report = AggregateReport(
                total_cycles=len(self._cycles),
                succeeded=self._succeeded,
                failed=self._failed,
                elapsed_seconds=elapsed_seconds,
                steps=steps,
                failures=failures,
                cycle_failures=dict(sorted(self._cycle_failures.items())),
                skipped_steps=sum(c.skipped for c in self._steps.values()),
                total_cost=self._total_cost,
                **self._cycle_durations(),
                cycles=tuple(self._cycles[i] for i in sorted(self._cycles)),
                metadata=dict(metadata or {}),
            )
        self._check(report)
        return report

    @staticmethod
    def _project(name: str, c: _StepCounters) -> StepStats:
        attempted = c.attempted
        return StepStats(
            name=name,
            attempted=attempted,
            succeeded=c.succeeded,
            failed=c.failed,
            skipped=c.skipped,
            total_cost=c.total_cost,
            avg_cost=c.total_cost / attempted if attempted else 0.0,
            min_cost=c.min_cost,
            max_cost=c.max_cost,
            avg_duration_ms=c.total_duration_us / attempted / 1000 if attempted else 0.0,
            min_duration_ms=c.min_duration_us / 1000 if c.min_duration_us is not None else None,
            max_duration_ms=c.max_duration_us / 1000 if c.max_duration_us is not None else None,
        )

    def _cycle_durations(self) -> dict[str, float | None]:
        n = self._succeeded
        if not n:
            return {}
        total = self._cycle_us_total
        # Population deviation, computed on exact integer sums.
        spread = math.sqrt(n * self._cycle_us_squares - total * total) / n
        return {
            "avg_cycle_ms": total / n / 1000,
            "min_cycle_ms": self._cycle_us_min / 1000,
            "max_cycle_ms": self._cycle_us_max / 1000,
            "stddev_cycle_ms": spread / 1000,
        }

    @staticmethod
    def _check(report: AggregateReport) -> None:
        if report.succeeded + report.failed != report.total_cycles:
            raise AggregationError("Cycle outcome counts do not add up to the cycle total")
        if sum(report.cycle_failures.values()) != report.failed:
            raise AggregationError("Cycle failure taxonomy does not match the failed count")
        for name, stats in report.steps.items():
            classified = sum(report.failures.get(name, {}).values())
            if classified != stats.failed:
                raise AggregationError(
                    f"Step '{name}': {stats.failed} failures but {classified} classified"
                )
