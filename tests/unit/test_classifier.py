import asyncio

import pytest

from escrowload.client.classifier import classify_error, classify_message, classify_receipt
from escrowload.client.receipt import ErrorClass
from escrowload.errors import RemoteCallError


@pytest.mark.parametrize(
    "code, expected",
    [
        ("INVALID_STATE", ErrorClass.PRECONDITION_MISMATCH),
        ("not_authorized", ErrorClass.AUTHORIZATION_REJECTED),
        ("ACTION_REJECTED", ErrorClass.AUTHORIZATION_REJECTED),
        ("TIMEOUT", ErrorClass.REMOTE_TIMEOUT),
        ("NETWORK_ERROR", ErrorClass.REMOTE_TIMEOUT),
        ("INSUFFICIENT_FUNDS", ErrorClass.INSUFFICIENT_RESOURCES),
        ("OUT_OF_GAS", ErrorClass.INSUFFICIENT_RESOURCES),
        ("RemoteTimeout", ErrorClass.REMOTE_TIMEOUT),
    ],
)
def test_codes(code, expected):
    assert classify_error(RemoteCallError("boom", code=code)) == expected


@pytest.mark.parametrize(
    "message, expected",
    [
        ("execution reverted: Invalid state for this action", ErrorClass.PRECONDITION_MISMATCH),
        ("Only client can call this function", ErrorClass.AUTHORIZATION_REJECTED),
        ("request timed out after 30s", ErrorClass.REMOTE_TIMEOUT),
        ("Transaction ran out of gas", ErrorClass.INSUFFICIENT_RESOURCES),
        ("insufficient funds for gas * price + value", ErrorClass.INSUFFICIENT_RESOURCES),
        ("execution reverted", ErrorClass.UNKNOWN),
    ],
)
def test_messages(message, expected):
    assert classify_message(message) == expected


def test_code_wins_over_message():
    exc = RemoteCallError("caller is not the client", code="INVALID_STATE")
    assert classify_error(exc) == ErrorClass.PRECONDITION_MISMATCH


def test_unknown_code_falls_back_to_message():
    exc = RemoteCallError("not authorized", code="CALL_EXCEPTION")
    assert classify_error(exc) == ErrorClass.AUTHORIZATION_REJECTED


@pytest.mark.parametrize("exc", [asyncio.TimeoutError(), TimeoutError("slow")])
def test_timeouts(exc):
    assert classify_error(exc) == ErrorClass.REMOTE_TIMEOUT


def test_plain_exception_is_unknown():
    assert classify_error(RuntimeError("kaboom")) == ErrorClass.UNKNOWN
    assert classify_message(None) == ErrorClass.UNKNOWN


def test_receipt_at_cost_limit_is_insufficient_resources():
    assert classify_receipt("reverted", 500_000, 500_000) == ErrorClass.INSUFFICIENT_RESOURCES
    assert classify_receipt("reverted", 1_000, 500_000) == ErrorClass.UNKNOWN
    assert classify_receipt("wrong state", 1_000, None) == ErrorClass.PRECONDITION_MISMATCH
