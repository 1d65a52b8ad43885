"""Map remote failures onto ErrorClass buckets.

Classification is attempted in this order and stops at the first hit:

1. timeout exception types (``asyncio.TimeoutError``, ``TimeoutError``);
2. ``RemoteCallError.code``, either an ``ErrorClass`` value or a key of
   ``ERROR_CODES``;
3. the lower-cased message searched for the substrings in ``MESSAGE_MARKERS``;
4. ``ErrorClass.UNKNOWN``.

No other text is inspected, so a fake client can produce every bucket by
raising ``RemoteCallError`` with one of the codes below.
"""

from __future__ import annotations

import asyncio

from escrowload.client.receipt import ErrorClass
from escrowload.errors import RemoteCallError

ERROR_CODES: dict[str, ErrorClass] = {
    "INVALID_STATE": ErrorClass.PRECONDITION_MISMATCH,
    "NOT_AUTHORIZED": ErrorClass.AUTHORIZATION_REJECTED,
    "ACTION_REJECTED": ErrorClass.AUTHORIZATION_REJECTED,
    "TIMEOUT": ErrorClass.REMOTE_TIMEOUT,
    "NETWORK_ERROR": ErrorClass.REMOTE_TIMEOUT,
    "INSUFFICIENT_FUNDS": ErrorClass.INSUFFICIENT_RESOURCES,
    "OUT_OF_GAS": ErrorClass.INSUFFICIENT_RESOURCES,
}

_CLASS_VALUES = {c.value for c in ErrorClass}

MESSAGE_MARKERS: tuple[tuple[str, ErrorClass], ...] = (
    ("invalid state", ErrorClass.PRECONDITION_MISMATCH),
    ("wrong state", ErrorClass.PRECONDITION_MISMATCH),
    ("not in state", ErrorClass.PRECONDITION_MISMATCH),
    ("not authorized", ErrorClass.AUTHORIZATION_REJECTED),
    ("unauthorized", ErrorClass.AUTHORIZATION_REJECTED),
    ("caller is not", ErrorClass.AUTHORIZATION_REJECTED),
    ("only client", ErrorClass.AUTHORIZATION_REJECTED),
    ("only freelancer", ErrorClass.AUTHORIZATION_REJECTED),
    ("timed out", ErrorClass.REMOTE_TIMEOUT),
    ("timeout", ErrorClass.REMOTE_TIMEOUT),
    ("out of gas", ErrorClass.INSUFFICIENT_RESOURCES),
    ("gas limit", ErrorClass.INSUFFICIENT_RESOURCES),
    ("insufficient funds", ErrorClass.INSUFFICIENT_RESOURCES),
)


def classify_message(message: str | None) -> ErrorClass:
    if not message:
        return ErrorClass.UNKNOWN
    lowered = message.lower()
    for marker, error_class in MESSAGE_MARKERS:
        if marker in lowered:
            return error_class
    return ErrorClass.UNKNOWN


def classify_error(exc: BaseException) -> ErrorClass:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorClass.REMOTE_TIMEOUT
    if isinstance(exc, RemoteCallError) and exc.code:
        if exc.code in _CLASS_VALUES:
            return ErrorClass(exc.code)
        error_class = ERROR_CODES.get(exc.code.upper())
        if error_class is not None:
            return error_class
    return classify_message(str(exc))


def classify_receipt(
    message: str | None,
    cost: int,
    cost_limit: int | None,
) -> ErrorClass:
    """Classify a reverted receipt that came back without an exception."""
    if cost_limit is not None and cost >= cost_limit:
        return ErrorClass.INSUFFICIENT_RESOURCES
    return classify_message(message)
