"""Scripted remote client used across the test suite."""

from __future__ import annotations

import asyncio
import itertools
from typing import Any

from escrowload.client.base import RemoteServiceClient
from escrowload.client.receipt import ErrorClass, Receipt
from escrowload.errors import RemoteCallError
from escrowload.models.workflow import WorkflowDefinition


def rejected(error_class: ErrorClass, message: str = "rejected", cost: int = 0) -> Receipt:
    """A failed receipt with a fixed duration, so reports stay reproducible."""
    return Receipt.failed(error_class, message, cost=cost, duration_ms=1.0)


class ScriptedClient(RemoteServiceClient):
    """Every call succeeds unless a method has scripted actions.

    An action is a ``Receipt`` (returned as is), an exception (raised), a
    callable taking ``params`` (its return value is treated as an action), or
    None (default success). Scripted actions are consumed in order and the last
    one repeats forever.
    """

    def __init__(
        self,
        workflow: WorkflowDefinition | None = None,
        cost: int = 100,
        duration_ms: float = 1.0,
        latency: float = 0.0,
        call_timeout: float = 5.0,
    ):
        super().__init__(call_timeout=call_timeout)
        self.cost = cost
        self.duration_ms = duration_ms
        self.latency = latency
        self.postconditions = (
            {step.method: step.postcondition for step in workflow} if workflow else {}
        )
        self.reachable = True
        self.remote_state: str | None = None
        self.balances: dict[str, int] = {}
        self.closed = False

        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.states: dict[str, str | None] = {}
        self.in_flight = 0
        self.max_in_flight = 0

        self._script: dict[str, list[Any]] = {}
        self._entities = itertools.count(1)
        self._txs = itertools.count(1)

    def script(self, method: str, *actions: Any) -> ScriptedClient:
        self._script.setdefault(method, []).extend(actions)
        return self

    def calls_to(self, method: str) -> list[tuple[str, str, dict[str, Any]]]:
        return [call for call in self.calls if call[0] == method]

    def _next_action(self, method: str) -> Any:
        actions = self._script.get(method)
        if not actions:
            return None
        return actions.pop(0) if len(actions) > 1 else actions[0]

    async def _respond(self, method: str, caller: str, params: dict[str, Any]) -> Receipt:
        self.calls.append((method, caller, dict(params)))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            action = self._next_action(method)
            if callable(action) and not isinstance(action, (Receipt, BaseException)):
                action = action(params)
            if isinstance(action, BaseException):
                raise action
            if isinstance(action, Receipt):
                return action
            return Receipt(
                success=True,
                cost=self.cost,
                duration_ms=self.duration_ms,
                state=self.postconditions.get(method),
                tx_hash=f"0xtx{next(self._txs)}",
            )
        finally:
            self.in_flight -= 1

    async def _create(self, initiator, method, params, value, cost_limit):
        receipt = await self._respond(method, initiator.address, params)
        if not receipt.success:
            return None, receipt
        entity_id = f"entity-{next(self._entities)}"
        self.states[entity_id] = receipt.state
        return entity_id, receipt

    async def _invoke(self, entity_id, method, caller, params, value, cost_limit):
        receipt = await self._respond(method, caller.address, params)
        if receipt.success:
            self.states[entity_id] = receipt.state
        return receipt

    async def _read_state(self, entity_id):
        if self.remote_state is not None:
            return self.remote_state
        if entity_id not in self.states:
            raise RemoteCallError(f"unknown entity {entity_id}")
        return self.states[entity_id]

    async def _ping(self):
        if not self.reachable:
            raise RemoteCallError("connection refused", code="NETWORK_ERROR")

    async def _get_balance(self, address):
        return self.balances.get(address)

    async def close(self):
        self.closed = True


def build_scripted_client(deployment, call_timeout):
    """Factory in the ``module:callable`` form the CLI's --client flag expects."""
    return ScriptedClient(call_timeout=call_timeout)
