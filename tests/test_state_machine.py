"""Unit tests for the order state machine and status resolver."""

from types import SimpleNamespace

import pytest

from festpay.common.state_machine import (
    CREATED,
    CUSTOMER_MESSAGES,
    FAILED,
    ORDER_STATUSES,
    PENDING,
    SUCCESS,
    resolve_status,
    validate_transition,
)


def attempts(*statuses):
    return [SimpleNamespace(status=s) for s in statuses]


def test_valid_transition():
    validate_transition(CREATED, PENDING)
    validate_transition(PENDING, SUCCESS)


def test_invalid_transition():
    """Nothing leaves a terminal state."""

    with pytest.raises(ValueError):
        validate_transition(SUCCESS, FAILED)
    with pytest.raises(ValueError):
        validate_transition(PENDING, CREATED)


@pytest.mark.parametrize(
    "current,statuses,expected",
    [
        (CREATED, (FAILED, SUCCESS), SUCCESS),
        (CREATED, (FAILED, PENDING), PENDING),
        (PENDING, (FAILED, FAILED), FAILED),
        (CREATED, (), CREATED),
        (PENDING, (), PENDING),
        (SUCCESS, (FAILED,), SUCCESS),
        (FAILED, (SUCCESS,), FAILED),
    ],
)
def test_resolve_status(current, statuses, expected):
    assert resolve_status(current, attempts(*statuses)) == expected


def test_resolve_is_order_independent():
    assert resolve_status(CREATED, attempts(SUCCESS, FAILED)) == resolve_status(CREATED, attempts(FAILED, SUCCESS))


def test_resolve_rejects_unknown_statuses():
    with pytest.raises(ValueError):
        resolve_status("REFUNDED", [])
    with pytest.raises(ValueError):
        resolve_status(CREATED, attempts("USER_DROPPED"))


def test_every_status_has_customer_message():
    assert set(CUSTOMER_MESSAGES) == set(ORDER_STATUSES)
    assert CUSTOMER_MESSAGES[FAILED] == "payment failed - retry"
