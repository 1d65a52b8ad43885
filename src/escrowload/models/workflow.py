"""Declarative description of the remote service's lifecycle."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from escrowload.errors import DefinitionError

REFERENCE_PREFIX = "@"


def parse_reference(value: Any) -> tuple[str, str] | None:
    """Return ``(step, key)`` for an ``@step.key`` payload reference, else None."""
    if not isinstance(value, str) or not value.startswith(REFERENCE_PREFIX):
        return None
    step, sep, key = value[len(REFERENCE_PREFIX) :].partition(".")
    if not sep or not step or not key:
        return None
    return step, key


@dataclass(frozen=True)
class StepSpec:
    """One state-changing call of the lifecycle."""

    name: str
    role: str
    method: str = ""
    precondition: str | None = None
    postcondition: str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict)
    value: int = 0
    cost_limit: int | None = None

    def __post_init__(self):
        if not self.name:
            raise DefinitionError("Step name must not be empty")
        if not self.role:
            raise DefinitionError(f"Step '{self.name}' has no role")
        if not self.method:
            object.__setattr__(self, "method", self.name)
        if self.value < 0:
            raise DefinitionError(f"Step '{self.name}' has a negative value")
        if self.cost_limit is not None and self.cost_limit <= 0:
            raise DefinitionError(f"Step '{self.name}' cost_limit must be positive")

    def references(self) -> list[tuple[str, str]]:
        """Payload references to earlier steps, as ``(step, key)`` pairs."""
        refs = []
        for value in self.payload.values():
            ref = parse_reference(value)
            if ref is not None:
                refs.append(ref)
        return refs

    @classmethod
    def from_dict(cls, data: dict) -> StepSpec:
        try:
            name = data["name"]
            role = data["role"]
        except KeyError as e:
            raise DefinitionError(f"Step is missing required field {e}") from None
        return cls(
            name=name,
            role=role,
            method=data.get("method", ""),
            precondition=data.get("precondition"),
            postcondition=data.get("postcondition"),
            payload=dict(data.get("payload") or {}),
            value=int(data.get("value", 0)),
            cost_limit=data.get("cost_limit"),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "role": self.role,
            "method": self.method,
            "precondition": self.precondition,
            "postcondition": self.postcondition,
            "payload": dict(self.payload),
            "value": self.value,
            "cost_limit": self.cost_limit,
        }


@dataclass(frozen=True)
class WorkflowDefinition:
    """Ordered, linear chain of steps.

    The first step creates the remote entity. Whenever two neighbouring steps
    both declare states, the postcondition of the first must equal the
    precondition of the second.
    """

    name: str
    steps: tuple[StepSpec, ...]
    description: str = ""

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    @property
    def creation_step(self) -> StepSpec:
        return self.steps[0]

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]

    @property
    def roles(self) -> set[str]:
        return {step.role for step in self.steps}

    def step_at(self, index: int) -> StepSpec:
        return self.steps[index]

    def validate(self, roles: Iterable[str]) -> None:
        """Raise DefinitionError unless the chain is linear and every role can be supplied."""
        if not self.steps:
            raise DefinitionError(f"Workflow '{self.name}' has no steps")

        seen: dict[str, int] = {}
        for index, step in enumerate(self.steps):
            if step.name in seen:
                raise DefinitionError(
                    f"Workflow '{self.name}': step name '{step.name}' is used twice"
                )
            seen[step.name] = index

        if self.creation_step.precondition is not None:
            raise DefinitionError(
                f"Workflow '{self.name}': creation step '{self.creation_step.name}' "
                f"cannot declare a precondition"
            )

        visited: set[str] = set()
        for prev, step in zip(self.steps, self.steps[1:]):
            if (
                prev.postcondition is not None
                and step.precondition is not None
                and prev.postcondition != step.precondition
            ):
                raise DefinitionError(
                    f"Workflow '{self.name}': chain broken between '{prev.name}' "
                    f"(-> {prev.postcondition}) and '{step.name}' (requires {step.precondition})"
                )
        for step in self.steps:
            if step.postcondition is None:
                continue
            if step.postcondition in visited:
                raise DefinitionError(
                    f"Workflow '{self.name}': state '{step.postcondition}' is reached twice, "
                    f"the chain must not loop"
                )
            visited.add(step.postcondition)

        available = set(roles)
        missing = sorted(self.roles - available)
        if missing:
            raise DefinitionError(
                f"Workflow '{self.name}' needs role(s) the identity pool cannot supply: "
                f"{', '.join(missing)}"
            )

        for index, step in enumerate(self.steps):
            for ref_step, _key in step.references():
                ref_index = seen.get(ref_step)
                if ref_index is None:
                    raise DefinitionError(
                        f"Workflow '{self.name}': step '{step.name}' references "
                        f"unknown step '{ref_step}'"
                    )
                if ref_index >= index:
                    raise DefinitionError(
                        f"Workflow '{self.name}': step '{step.name}' references "
                        f"'{ref_step}', which has not run yet"
                    )

    def can_fire_from(self, start: int, state: str | None) -> bool:
        """True if some step at or after ``start`` is allowed to run in ``state``."""
        return any(
            step.precondition is None or step.precondition == state
            for step in self.steps[start:]
        )

    @classmethod
    def from_dict(cls, data: dict) -> WorkflowDefinition:
        if "name" not in data:
            raise DefinitionError("Workflow is missing 'name'")
        raw_steps = data.get("steps") or []
        if not isinstance(raw_steps, list):
            raise DefinitionError(f"Workflow '{data['name']}': 'steps' must be a list")
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            steps=tuple(StepSpec.from_dict(s) for s in raw_steps),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "steps": [step.to_dict() for step in self.steps],
        }
