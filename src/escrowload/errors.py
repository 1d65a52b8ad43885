"""Exception hierarchy for the load harness."""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for all harness errors."""


class StartupError(HarnessError):
    """A precondition of the run failed before the first cycle started."""


class DefinitionError(StartupError):
    """The workflow definition is not a valid linear chain."""


class PoolExhaustedError(StartupError):
    """A role required by the workflow has no configured identity."""

    def __init__(self, roles: list[str]):
        self.roles = sorted(roles)
        super().__init__(f"No identities configured for role(s): {', '.join(self.roles)}")


class ServiceUnreachableError(StartupError):
    """The remote service could not be reached before the first cycle."""


class ConfigError(StartupError):
    """The run configuration is invalid."""


class AggregationError(HarnessError):
    """Statistics invariant violated; the aggregated numbers can no longer be trusted."""


class RemoteCallError(HarnessError):
    """Raised by concrete clients when a remote call is rejected.

    ``code`` is an optional machine-readable error code used by the classifier
    before it falls back to inspecting ``message``.
    """

    def __init__(self, message: str, code: str | None = None, cost: int = 0):
        self.code = code
        self.cost = cost
        super().__init__(message)
