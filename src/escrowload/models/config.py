"""Run configuration and run-file loading."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path

import yaml

from escrowload.errors import ConfigError


class StateSource(str, Enum):
    """Where the cycle executor reads the remote entity's state from."""

    RECEIPT = "receipt"  # Trust the last receipt, read remotely only when it carries no state
    REMOTE = "remote"  # Always read state before a guarded step


@dataclass
class RunConfig:
    """Parameters of one load run."""

    cycle_count: int = 10
    target_rate: float = 5.0  # Cycle starts per second
    concurrency: int = 1
    call_timeout_seconds: float = 30.0
    min_delay_ms: float = 1.0
    state_source: StateSource = StateSource.RECEIPT
    output_dir: str | None = "results"
    show_progress: bool = True

    def __post_init__(self):
        if isinstance(self.state_source, str) and not isinstance(self.state_source, StateSource):
            try:
                self.state_source = StateSource(self.state_source)
            except ValueError:
                raise ConfigError(
                    f"state_source must be one of: {', '.join(s.value for s in StateSource)}"
                ) from None
        if self.cycle_count < 1:
            raise ConfigError("cycle_count must be at least 1")
        if self.target_rate <= 0:
            raise ConfigError("target_rate must be greater than 0")
        if self.concurrency < 1:
            raise ConfigError("concurrency must be at least 1")
        if self.call_timeout_seconds <= 0:
            raise ConfigError("call_timeout_seconds must be greater than 0")
        if self.min_delay_ms < 0:
            raise ConfigError("min_delay_ms must be >= 0")

    @classmethod
    def from_dict(cls, data: dict) -> RunConfig:
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown run option(s): {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_env(cls, base: RunConfig | None = None) -> RunConfig:
        """Apply LOAD_TEST_COUNT / TARGET_TPS environment overrides."""
        values = asdict(base) if base is not None else {}
        try:
            if "LOAD_TEST_COUNT" in os.environ:
                values["cycle_count"] = int(os.environ["LOAD_TEST_COUNT"])
            if "TARGET_TPS" in os.environ:
                values["target_rate"] = float(os.environ["TARGET_TPS"])
        except ValueError as e:
            raise ConfigError(f"Invalid environment override: {e}") from None
        return cls(**values)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state_source"] = self.state_source.value
        return data


@dataclass
class RunFile:
    """Contents of a YAML run file."""

    run: RunConfig = field(default_factory=RunConfig)
    identities: dict[str, list[str]] = field(default_factory=dict)
    workflow: str | None = None
    deployment: str | None = None


def load_run_file(path: Path) -> RunFile:
    if not path.exists():
        raise ConfigError(f"Run file not found: {path}")
    with path.open() as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Run file {path} must contain a mapping")

    identities = data.get("identities") or {}
    if not isinstance(identities, dict):
        raise ConfigError("'identities' must map role names to address lists")

    return RunFile(
        run=RunConfig.from_dict(data.get("run") or {}),
        identities={role: list(addrs or []) for role, addrs in identities.items()},
        workflow=data.get("workflow"),
        deployment=data.get("deployment"),
    )
