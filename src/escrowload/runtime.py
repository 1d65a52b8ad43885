"""Process-wide thread pool for clients that wrap blocking RPC libraries."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

DEFAULT_RPC_WORKERS = 16

logger = logging.getLogger(__name__)

_executor: ThreadPoolExecutor | None = None


def get_executor(max_workers: int = DEFAULT_RPC_WORKERS) -> ThreadPoolExecutor:
    """Return the shared pool, creating it on first use.

    ``max_workers`` only applies to the call that creates the pool.
    """
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rpc-call")
        logger.debug(f"Started RPC thread pool ({max_workers} workers)")
    return _executor


def shutdown_executor(wait: bool = True, cancel_futures: bool = False) -> None:
    """Drop the shared pool.

    With ``wait=False`` calls still running after their timeout are abandoned
    to finish on their own; the next ``get_executor`` starts a fresh pool.
    """
    global _executor
    if _executor is not None:
        _executor.shutdown(wait=wait, cancel_futures=cancel_futures)
        _executor = None
