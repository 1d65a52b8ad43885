"""Boundary to the remote stateful service.

Concrete clients implement the underscored hooks. The public coroutines wrap
every hook in a bounded wait, time it, and turn whatever the hook raises into a
classified failed ``Receipt``, so callers never see transport exceptions from
``create`` or ``invoke``.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any

from escrowload.client.classifier import classify_error, classify_receipt
from escrowload.client.receipt import ErrorClass, Receipt
from escrowload.errors import RemoteCallError, ServiceUnreachableError
from escrowload.identity import Identity
from escrowload.runtime import DEFAULT_RPC_WORKERS, get_executor

logger = logging.getLogger(__name__)


class RemoteServiceClient(ABC):
    """Base class for clients of the remote service."""

    def __init__(self, call_timeout: float = 30.0):
        self.call_timeout = call_timeout

    @abstractmethod
    async def _create(
        self,
        initiator: Identity,
        method: str,
        params: dict[str, Any],
        value: int,
        cost_limit: int | None,
    ) -> tuple[str | None, Receipt]:
        """Submit the creation call and wait for finality."""

    @abstractmethod
    async def _invoke(
        self,
        entity_id: str,
        method: str,
        caller: Identity,
        params: dict[str, Any],
        value: int,
        cost_limit: int | None,
    ) -> Receipt:
        """Submit a step call against an existing entity and wait for finality."""

    @abstractmethod
    async def _read_state(self, entity_id: str) -> str:
        pass

    @abstractmethod
    async def _ping(self) -> None:
        pass

    async def _get_address(self, entity_id: str) -> str:
        return entity_id

    async def _get_balance(self, address: str) -> int | None:
        return None

    async def close(self) -> None:  # noqa: B027
        """Release transport resources. Override in subclasses."""
        pass

    async def _bounded(self, coro):
        return await asyncio.wait_for(coro, timeout=self.call_timeout)

    def _finish(self, receipt: Receipt, started: float, cost_limit: int | None) -> Receipt:
        if receipt.duration_ms == 0.0:
            receipt = replace(receipt, duration_ms=(time.perf_counter() - started) * 1000)
        if not receipt.success and receipt.error_class is None:
            receipt = replace(
                receipt,
                error_class=classify_receipt(receipt.error_message, receipt.cost, cost_limit),
            )
        return receipt

    def _failure(self, exc: Exception, started: float) -> Receipt:
        error_class = classify_error(exc)
        message = str(exc) or type(exc).__name__
        if error_class == ErrorClass.REMOTE_TIMEOUT and not str(exc):
            message = f"No finality within {self.call_timeout:g}s"
        cost = exc.cost if isinstance(exc, RemoteCallError) else 0
        return Receipt.failed(
            error_class,
            message,
            cost=cost,
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    async def create(
        self,
        initiator: Identity,
        method: str,
        params: dict[str, Any],
        *,
        value: int = 0,
        cost_limit: int | None = None,
    ) -> tuple[str | None, Receipt]:
        started = time.perf_counter()
        try:
            entity_id, receipt = await self._bounded(
                self._create(initiator, method, params, value, cost_limit)
            )
        except Exception as e:
            logger.debug(f"{method} by {initiator.address} failed: {e!r}")
            return None, self._failure(e, started)

        receipt = self._finish(receipt, started, cost_limit)
        if receipt.success and not entity_id:
            receipt = replace(
                receipt,
                success=False,
                error_class=ErrorClass.UNKNOWN,
                error_message="Creation succeeded but no entity identifier was emitted",
            )
        return (entity_id if receipt.success else None), receipt

    async def invoke(
        self,
        entity_id: str,
        method: str,
        caller: Identity,
        params: dict[str, Any],
        *,
        value: int = 0,
        cost_limit: int | None = None,
    ) -> Receipt:
        started = time.perf_counter()
        try:
            receipt = await self._bounded(
                self._invoke(entity_id, method, caller, params, value, cost_limit)
            )
        except Exception as e:
            logger.debug(f"{method} on {entity_id} by {caller.address} failed: {e!r}")
            return self._failure(e, started)
        return self._finish(receipt, started, cost_limit)

    async def read_state(self, entity_id: str) -> str:
        """Return the entity's state tag.

        Raises RemoteCallError with an ``ErrorClass`` value as code when the
        read fails or does not complete in time.
        """
        try:
            return await self._bounded(self._read_state(entity_id))
        except Exception as e:
            error_class = classify_error(e)
            raise RemoteCallError(
                f"State read for {entity_id} failed: {e or type(e).__name__}",
                code=error_class.value,
            ) from e

    async def get_address(self, entity_id: str) -> str:
        return await self._bounded(self._get_address(entity_id))

    async def get_balance(self, address: str) -> int | None:
        try:
            return await self._bounded(self._get_balance(address))
        except Exception as e:
            logger.warning(f"Balance lookup for {address} failed: {e}")
            return None

    async def ping(self) -> None:
        try:
            await self._bounded(self._ping())
        except Exception as e:
            raise ServiceUnreachableError(f"Remote service is unreachable: {e}") from e


class ThreadedRemoteServiceClient(RemoteServiceClient):
    """Adapter for blocking client libraries.

    Subclasses implement the ``*_blocking`` methods; each call runs on the
    shared thread pool so a slow RPC never stalls the event loop.
    """

    def __init__(self, call_timeout: float = 30.0, max_workers: int = DEFAULT_RPC_WORKERS):
        super().__init__(call_timeout=call_timeout)
        self.max_workers = max_workers

    @abstractmethod
    def create_blocking(self, initiator, method, params, value, cost_limit):
        """Return ``(entity_id, Receipt)`` once the creation call is final."""

    @abstractmethod
    def invoke_blocking(self, entity_id, method, caller, params, value, cost_limit):
        pass

    @abstractmethod
    def read_state_blocking(self, entity_id):
        pass

    @abstractmethod
    def ping_blocking(self):
        pass

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        executor = get_executor(self.max_workers)
        return await loop.run_in_executor(executor, functools.partial(fn, *args))

    async def _create(self, initiator, method, params, value, cost_limit):
        return await self._run(self.create_blocking, initiator, method, params, value, cost_limit)

    async def _invoke(self, entity_id, method, caller, params, value, cost_limit):
        return await self._run(
            self.invoke_blocking, entity_id, method, caller, params, value, cost_limit
        )

    async def _read_state(self, entity_id):
        return await self._run(self.read_state_blocking, entity_id)

    async def _ping(self):
        return await self._run(self.ping_blocking)
