"""Caller identities and deterministic per-cycle role assignment."""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace

from escrowload.errors import PoolExhaustedError


@dataclass(frozen=True)
class Identity:
    """An address able to authorize calls, tagged with the role it plays."""

    address: str
    role: str
    balance: int | None = None


def synthetic_address(role: str, index: int) -> str:
    digest = hashlib.sha256(f"{role}-{index}".encode()).hexdigest()
    return "0x" + digest[:40]


class IdentityPool:
    """Read-only pool of identities grouped by role.

    ``assign`` is a pure function of the cycle index: role ``r`` gets
    ``identities[r][cycle_index % len(identities[r])]``. ``lease`` yields the
    same bindings but holds the cycle back while another in-flight cycle uses
    the same addresses for the exclusive roles.
    """

    def __init__(
        self,
        identities: Mapping[str, Iterable[Identity]],
        exclusive_roles: Iterable[str] | None = None,
    ):
        self._identities: dict[str, tuple[Identity, ...]] = {
            role: tuple(ids) for role, ids in identities.items()
        }
        for role, ids in self._identities.items():
            for identity in ids:
                if identity.role != role:
                    raise ValueError(
                        f"Identity {identity.address} is tagged '{identity.role}' "
                        f"but listed under role '{role}'"
                    )
        self.exclusive_roles: tuple[str, ...] = tuple(
            sorted(exclusive_roles if exclusive_roles is not None else self._identities)
        )

        self._in_flight: set[tuple[str, ...]] = set()
        self._lease_loop: asyncio.AbstractEventLoop | None = None
        self._lease_condition: asyncio.Condition | None = None

    @classmethod
    def from_dict(
        cls,
        addresses: Mapping[str, Iterable[str]],
        exclusive_roles: Iterable[str] | None = None,
    ) -> IdentityPool:
        return cls(
            {
                role: [Identity(address=addr, role=role) for addr in addrs]
                for role, addrs in addresses.items()
            },
            exclusive_roles=exclusive_roles,
        )

    @classmethod
    def generate(
        cls,
        counts: Mapping[str, int],
        exclusive_roles: Iterable[str] | None = None,
    ) -> IdentityPool:
        """Build a pool of deterministic synthetic addresses, for simulated runs."""
        return cls.from_dict(
            {role: [synthetic_address(role, i) for i in range(n)] for role, n in counts.items()},
            exclusive_roles=exclusive_roles,
        )

    @property
    def roles(self) -> set[str]:
        return {role for role, ids in self._identities.items() if ids}

    @property
    def configured_roles(self) -> set[str]:
        return set(self._identities)

    def identities(self, role: str) -> tuple[Identity, ...]:
        return self._identities.get(role, ())

    def __len__(self) -> int:
        return sum(len(ids) for ids in self._identities.values())

    def require(self, roles: Iterable[str]) -> None:
        missing = [role for role in roles if not self._identities.get(role)]
        if missing:
            raise PoolExhaustedError(missing)

    def assign(self, cycle_index: int) -> dict[str, Identity]:
        empty = [role for role, ids in self._identities.items() if not ids]
        if empty:
            raise PoolExhaustedError(empty)
        return {
            role: ids[cycle_index % len(ids)] for role, ids in sorted(self._identities.items())
        }

    def collision_key(self, bindings: Mapping[str, Identity]) -> tuple[str, ...]:
        return tuple(bindings[role].address for role in self.exclusive_roles if role in bindings)

    @asynccontextmanager
    async def lease(self, cycle_index: int) -> AsyncIterator[dict[str, Identity]]:
        bindings = self.assign(cycle_index)
        key = self.collision_key(bindings)
        loop = asyncio.get_running_loop()
        if self._lease_condition is None or self._lease_loop is not loop:
            self._lease_loop = loop
            self._lease_condition = asyncio.Condition()
            self._in_flight.clear()
        condition = self._lease_condition

        async with condition:
            await condition.wait_for(lambda: key not in self._in_flight)
            self._in_flight.add(key)
        try:
            yield bindings
        finally:
            async with condition:
                self._in_flight.discard(key)
                condition.notify_all()

    @property
    def leased(self) -> int:
        return len(self._in_flight)

    def with_balances(self, balances: Mapping[str, int | None]) -> IdentityPool:
        """Return a new pool whose identities carry the given balance snapshots."""
        return IdentityPool(
            {
                role: [replace(i, balance=balances.get(i.address, i.balance)) for i in ids]
                for role, ids in self._identities.items()
            },
            exclusive_roles=self.exclusive_roles,
        )
