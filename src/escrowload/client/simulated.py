"""In-process simulation of the freelance escrow contract."""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import random
import threading
from dataclasses import dataclass, field
from typing import Any

from escrowload.client.base import RemoteServiceClient
from escrowload.client.receipt import Receipt
from escrowload.errors import RemoteCallError
from escrowload.identity import Identity

ESCROW_STATES = ("Created", "InProgress", "Delivered", "Approved", "Paid", "Completed", "Cancelled")
TERMINAL_STATES = ("Completed", "Cancelled")


@dataclass(frozen=True)
class MethodRule:
    """Who may call a contract method, from which state, and what it costs."""

    party: str | None  # "client", "freelancer", or None for anyone
    from_state: str | None
    to_state: str
    cost: int


ESCROW_METHODS: dict[str, MethodRule] = {
    "createContract": MethodRule(None, None, "Created", 1_180_000),
    "authenticate": MethodRule("client", "Created", "InProgress", 48_500),
    "deliverWork": MethodRule("freelancer", "InProgress", "Delivered", 96_200),
    "approveDeliverable": MethodRule("client", "Delivered", "Approved", 52_800),
    "makeDirectPayment": MethodRule("client", "Approved", "Paid", 67_400),
    "completeContract": MethodRule("client", "Paid", "Completed", 41_900),
}


@dataclass
class SimulatorStats:
    calls: int = 0
    reverts: int = 0
    contracts_created: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, reverted: bool = False, created: bool = False) -> None:
        with self._lock:
            self.calls += 1
            if reverted:
                self.reverts += 1
            if created:
                self.contracts_created += 1


@dataclass
class _Escrow:
    address: str
    client: str
    freelancer: str
    amount: int
    title: str
    state: str = "Created"
    deliverable: str | None = None


def _hash(*parts: Any) -> str:
    return "0x" + hashlib.sha256("-".join(str(p) for p in parts).encode()).hexdigest()


class SimulatedEscrowClient(RemoteServiceClient):
    """Escrow contract factory simulated in memory.

    Enforces the same rules the deployed contract does: caller party per
    method, state preconditions, exact payment amount, approval of the exact
    deliverable, and gas caps. Latency jitter and injected faults come from a
    seeded RNG, so two clients built with the same arguments behave the same.
    """

    def __init__(
        self,
        factory_address: str = "0x" + "f" * 40,
        latency_ms: float = 0.0,
        jitter_ms: float = 0.0,
        failure_rates: dict[str, float] | None = None,
        seed: int = 0,
        reject_duplicate_pairs: bool = False,
        balances: dict[str, int] | None = None,
        methods: dict[str, MethodRule] | None = None,
        call_timeout: float = 30.0,
    ):
        super().__init__(call_timeout=call_timeout)
        self.factory_address = factory_address
        self.latency_ms = latency_ms
        self.jitter_ms = jitter_ms
        self.failure_rates = dict(failure_rates or {})
        self.reject_duplicate_pairs = reject_duplicate_pairs
        self.methods = dict(methods or ESCROW_METHODS)

        self._rng = random.Random(seed)
        self._balances = dict(balances or {})
        self._entities: dict[str, _Escrow] = {}
        self._counter = itertools.count(1)
        self._tx_counter = itertools.count(1)
        self._online = threading.Event()
        self._online.set()
        self._stats = SimulatorStats()

    def go_offline(self) -> None:
        """Make every subsequent call fail as if the node dropped off the network."""
        self._online.clear()

    def go_online(self) -> None:
        self._online.set()

    def get_stats(self) -> SimulatorStats:
        return self._stats

    @property
    def contract_count(self) -> int:
        return len(self._entities)

    async def _network(self, method: str) -> None:
        delay = self.latency_ms
        if self.jitter_ms:
            delay += self._rng.uniform(0, self.jitter_ms)
        if delay > 0:
            await asyncio.sleep(delay / 1000)
        if not self._online.is_set():
            raise RemoteCallError("connection refused", code="NETWORK_ERROR")
        rate = self.failure_rates.get(method, 0.0)
        if rate and self._rng.random() < rate:
            self._stats.record(reverted=True)
            raise RemoteCallError(f"execution reverted: simulated fault in {method}")

    def _rule(self, method: str) -> MethodRule:
        rule = self.methods.get(method)
        if rule is None:
            raise RemoteCallError(f"execution reverted: no method '{method}'")
        return rule

    def _charge(self, rule: MethodRule, cost_limit: int | None) -> int:
        if cost_limit is not None and rule.cost > cost_limit:
            self._stats.record(reverted=True)
            raise RemoteCallError(
                f"out of gas: needs {rule.cost}, limit {cost_limit}",
                code="OUT_OF_GAS",
                cost=cost_limit,
            )
        return rule.cost

    def _revert(self, message: str, code: str | None = None) -> RemoteCallError:
        self._stats.record(reverted=True)
        return RemoteCallError(f"execution reverted: {message}", code=code)

    def _tx_hash(self) -> str:
        return _hash(self.factory_address, "tx", next(self._tx_counter))

    async def _create(
        self,
        initiator: Identity,
        method: str,
        params: dict[str, Any],
        value: int,
        cost_limit: int | None,
    ) -> tuple[str | None, Receipt]:
        await self._network(method)
        rule = self._rule(method)
        if rule.from_state is not None:
            raise self._revert(f"{method} does not create a contract")
        try:
            client = params["client"]
            freelancer = params["freelancer"]
            amount = int(params["amount"])
        except (KeyError, TypeError, ValueError) as e:
            raise self._revert(f"bad createContract arguments: {e!r}") from None

        if self.reject_duplicate_pairs:
            for escrow in self._entities.values():
                if (
                    escrow.client == client
                    and escrow.freelancer == freelancer
                    and escrow.state not in TERMINAL_STATES
                ):
                    raise self._revert(
                        "invalid state: an active contract already exists for this pair",
                        code="INVALID_STATE",
                    )

        cost = self._charge(rule, cost_limit)
        address = _hash(self.factory_address, next(self._counter))[:42]
        self._entities[address] = _Escrow(
            address=address,
            client=client,
            freelancer=freelancer,
            amount=amount,
            title=str(params.get("title", "")),
            state=rule.to_state,
        )
        self._stats.record(created=True)
        return address, Receipt(
            success=True,
            cost=cost,
            state=rule.to_state,
            tx_hash=self._tx_hash(),
            identifiers={"contractAddress": address},
        )

    async def _invoke(
        self,
        entity_id: str,
        method: str,
        caller: Identity,
        params: dict[str, Any],
        value: int,
        cost_limit: int | None,
    ) -> Receipt:
        await self._network(method)
        escrow = self._entities.get(entity_id)
        if escrow is None:
            raise self._revert(f"no contract at {entity_id}")
        rule = self._rule(method)

        if rule.party is not None:
            expected = escrow.client if rule.party == "client" else escrow.freelancer
            if caller.address != expected:
                raise self._revert(f"caller is not the {rule.party}", code="NOT_AUTHORIZED")
        if rule.from_state is not None and escrow.state != rule.from_state:
            raise self._revert(
                f"invalid state {escrow.state}, {method} requires {rule.from_state}",
                code="INVALID_STATE",
            )

        if method == "deliverWork":
            escrow.deliverable = params.get("deliverable")
        elif method == "approveDeliverable":
            if params.get("deliverable") != escrow.deliverable:
                raise self._revert("deliverable does not match the delivered work")
        elif method == "makeDirectPayment":
            if value != escrow.amount:
                raise self._revert(
                    f"insufficient funds: payment {value} != contract amount {escrow.amount}",
                    code="INSUFFICIENT_FUNDS",
                )
            if caller.address in self._balances:
                if self._balances[caller.address] < value:
                    raise self._revert("insufficient funds for payment", code="INSUFFICIENT_FUNDS")
                self._balances[caller.address] -= value
                self._balances[escrow.freelancer] = self._balances.get(escrow.freelancer, 0) + value

        cost = self._charge(rule, cost_limit)
        escrow.state = rule.to_state
        self._stats.record()
        return Receipt(success=True, cost=cost, state=escrow.state, tx_hash=self._tx_hash())

    async def _read_state(self, entity_id: str) -> str:
        await self._network("getState")
        escrow = self._entities.get(entity_id)
        if escrow is None:
            raise RemoteCallError(f"no contract at {entity_id}")
        return escrow.state

    async def _get_address(self, entity_id: str) -> str:
        if entity_id not in self._entities:
            raise RemoteCallError(f"no contract at {entity_id}")
        return self._entities[entity_id].address

    async def _get_balance(self, address: str) -> int | None:
        return self._balances.get(address)

    async def _ping(self) -> None:
        if not self._online.is_set():
            raise RemoteCallError("connection refused", code="NETWORK_ERROR")
