"""Per-step and per-cycle result records."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from escrowload.client.receipt import ErrorClass


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepOutcome:
    """What happened to one step of one cycle."""

    name: str
    status: StepStatus
    cost: int = 0
    duration_ms: float = 0.0
    error_class: ErrorClass | None = None
    error_message: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    tx_hash: str | None = None
    state: str | None = None

    @property
    def success(self) -> bool:
        return self.status == StepStatus.SUCCEEDED

    @property
    def attempted(self) -> bool:
        return self.status != StepStatus.SKIPPED

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "cost": self.cost,
            "duration_ms": self.duration_ms,
            "error_class": self.error_class.value if self.error_class else None,
            "error_message": self.error_message,
            "payload": self.payload,
            "tx_hash": self.tx_hash,
            "state": self.state,
        }

    @classmethod
    def from_dict(cls, data: dict) -> StepOutcome:
        error_class = data.get("error_class")
        return cls(
            name=data["name"],
            status=StepStatus(data["status"]),
            cost=data.get("cost", 0),
            duration_ms=data.get("duration_ms", 0.0),
            error_class=ErrorClass(error_class) if error_class else None,
            error_message=data.get("error_message"),
            payload=data.get("payload") or {},
            tx_hash=data.get("tx_hash"),
            state=data.get("state"),
        )


@dataclass(frozen=True)
class CycleResult:
    """Frozen record of one workflow execution."""

    cycle_index: int
    entity_id: str | None
    bindings: dict[str, str]
    outcomes: tuple[StepOutcome, ...]
    success: bool
    failure_class: ErrorClass | None = None

    @property
    def total_cost(self) -> int:
        return sum(o.cost for o in self.outcomes)

    @property
    def total_duration_ms(self) -> float:
        return sum(o.duration_ms for o in self.outcomes)

    @property
    def failed_step(self) -> StepOutcome | None:
        for outcome in self.outcomes:
            if outcome.status == StepStatus.FAILED:
                return outcome
        return None

    def outcome(self, name: str) -> StepOutcome | None:
        for o in self.outcomes:
            if o.name == name:
                return o
        return None

    def to_dict(self) -> dict:
        return {
            "cycle_index": self.cycle_index,
            "entity_id": self.entity_id,
            "bindings": dict(self.bindings),
            "success": self.success,
            "failure_class": self.failure_class.value if self.failure_class else None,
            "total_cost": self.total_cost,
            "total_duration_ms": self.total_duration_ms,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }

    @classmethod
    def from_dict(cls, data: dict) -> CycleResult:
        failure_class = data.get("failure_class")
        return cls(
            cycle_index=data["cycle_index"],
            entity_id=data.get("entity_id"),
            bindings=dict(data.get("bindings") or {}),
            outcomes=tuple(StepOutcome.from_dict(o) for o in data.get("outcomes", [])),
            success=data["success"],
            failure_class=ErrorClass(failure_class) if failure_class else None,
        )


@dataclass
class CycleRecorder:
    """Mutable builder filled in while a cycle runs, frozen at the end."""

    cycle_index: int
    bindings: dict[str, str]
    entity_id: str | None = None
    outcomes: list[StepOutcome] = field(default_factory=list)
    failure_class: ErrorClass | None = None

    def add(self, outcome: StepOutcome) -> None:
        self.outcomes.append(outcome)

    def fail(self, error_class: ErrorClass) -> None:
        if self.failure_class is None:
            self.failure_class = error_class

    def sent_payload(self, step_name: str) -> dict[str, Any] | None:
        for outcome in self.outcomes:
            if outcome.name == step_name and outcome.success:
                return outcome.payload
        return None

    def freeze(self) -> CycleResult:
        success = self.failure_class is None and all(
            o.status != StepStatus.FAILED for o in self.outcomes
        )
        return CycleResult(
            cycle_index=self.cycle_index,
            entity_id=self.entity_id,
            bindings=dict(self.bindings),
            outcomes=tuple(self.outcomes),
            success=success,
            failure_class=self.failure_class,
        )
