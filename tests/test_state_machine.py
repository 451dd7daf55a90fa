"""
Unit tests for the transaction state machine.
"""
import itertools

import pytest

from gateway_hub.core.states import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    TransactionStatus,
    can_transition,
    is_terminal,
)

S = TransactionStatus


class TestTransitions:
    """Test suite for the transition table."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (S.INITIATED, S.PROCESSING),
            (S.PROCESSING, S.COMPLETED),
            (S.INITIATED, S.COMPLETED),
            (S.INITIATED, S.FAILED),
            (S.PROCESSING, S.FAILED),
            (S.COMPLETED, S.PARTIALLY_REFUNDED),
            (S.PARTIALLY_REFUNDED, S.REFUNDED),
            (S.COMPLETED, S.REFUNDED),
            (S.COMPLETED, S.DISPUTED),
            (S.INITIATED, S.CANCELED),
            (S.PROCESSING, S.CANCELED),
        ],
    )
    def test_allowed(self, current: TransactionStatus, target: TransactionStatus) -> None:
        assert can_transition(current, target)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (S.COMPLETED, S.PROCESSING),
            (S.COMPLETED, S.INITIATED),
            (S.PARTIALLY_REFUNDED, S.COMPLETED),
            (S.PROCESSING, S.INITIATED),
            (S.INITIATED, S.REFUNDED),
            (S.PROCESSING, S.DISPUTED),
        ],
    )
    def test_forbidden(self, current: TransactionStatus, target: TransactionStatus) -> None:
        assert not can_transition(current, target)

    @pytest.mark.unit
    def test_terminal_statuses_have_no_exits(self) -> None:
        """Nothing leaves a terminal status except staying put."""
        for terminal, target in itertools.product(TERMINAL_STATUSES, TransactionStatus):
            assert can_transition(terminal, target) == (terminal == target)
            assert is_terminal(terminal)

    @pytest.mark.unit
    def test_same_status_is_accepted(self) -> None:
        for status in TransactionStatus:
            assert can_transition(status, status)

    @pytest.mark.unit
    def test_every_status_has_an_entry(self) -> None:
        assert set(ALLOWED_TRANSITIONS) == set(TransactionStatus)

    @pytest.mark.unit
    def test_non_terminal_statuses(self) -> None:
        for status in (S.INITIATED, S.PROCESSING, S.COMPLETED, S.PARTIALLY_REFUNDED):
            assert not is_terminal(status)
