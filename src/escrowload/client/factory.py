"""Factory for building remote service clients from run settings."""

from __future__ import annotations

import importlib
from collections.abc import Mapping

from escrowload.client.base import RemoteServiceClient
from escrowload.client.deployment import FACTORY_COMPONENT
from escrowload.client.simulated import SimulatedEscrowClient
from escrowload.errors import ConfigError


class ClientFactory:
    def __init__(
        self,
        deployment: Mapping[str, str] | None = None,
        call_timeout: float = 30.0,
    ):
        self.deployment = dict(deployment or {})
        self.call_timeout = call_timeout

    def create_simulated(
        self,
        latency_ms: float = 0.0,
        jitter_ms: float = 0.0,
        seed: int = 0,
        failure_rates: dict[str, float] | None = None,
        reject_duplicate_pairs: bool = True,
    ) -> SimulatedEscrowClient:
        kwargs = {}
        if FACTORY_COMPONENT in self.deployment:
            kwargs["factory_address"] = self.deployment[FACTORY_COMPONENT]
        return SimulatedEscrowClient(
            latency_ms=latency_ms,
            jitter_ms=jitter_ms,
            seed=seed,
            failure_rates=failure_rates,
            reject_duplicate_pairs=reject_duplicate_pairs,
            call_timeout=self.call_timeout,
            **kwargs,
        )

    def create_from_path(self, path: str) -> RemoteServiceClient:
        """Build a client from ``package.module:callable``.

        The callable receives ``deployment`` and ``call_timeout`` keyword
        arguments and must return a RemoteServiceClient.
        """
        module_name, sep, attr = path.partition(":")
        if not sep or not module_name or not attr:
            raise ConfigError(f"Client path must look like 'package.module:callable', got '{path}'")
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            raise ConfigError(f"Cannot import client module '{module_name}': {e}") from e
        target = getattr(module, attr, None)
        if target is None:
            raise ConfigError(f"Module '{module_name}' has no attribute '{attr}'")
        if not callable(target):
            raise ConfigError(f"'{path}' is not callable")

        client = target(deployment=self.deployment, call_timeout=self.call_timeout)
        if not isinstance(client, RemoteServiceClient):
            raise ConfigError(f"'{path}' returned {type(client).__name__}, not a RemoteServiceClient")
        return client
