"""
Transition table tests for the return state machine.
"""

import subprocess
import sys
from pathlib import Path

import pytest

from app.core.exceptions import InvalidTransition
from app.services.return_state_machine import (
    DEADLINE_EXPECTED_STATUS,
    EVENT_TRANSITIONS,
    TERMINAL_STATUSES,
    DeadlineKind,
    ReturnEvent,
    ReturnStatus,
    get_allowed_events,
    get_status_label,
    is_terminal,
    resolve_transition,
    triggers_refund,
)


class TestResolveTransition:

    @pytest.mark.parametrize(
        "status,event,expected",
        [
            (ReturnStatus.PENDING, ReturnEvent.SHOP_APPROVE, ReturnStatus.APPROVED),
            (ReturnStatus.PENDING, ReturnEvent.SHOP_REJECT, ReturnStatus.REJECTED),
            (ReturnStatus.PENDING, ReturnEvent.SHOP_REFUND_WITHOUT_RETURN, ReturnStatus.REFUNDED),
            (ReturnStatus.PENDING, ReturnEvent.SHOP_ACTION_TIMEOUT, ReturnStatus.AUTO_REFUNDED),
            (ReturnStatus.PENDING, ReturnEvent.SHOP_ACTION_TIMEOUT_APPROVE, ReturnStatus.APPROVED),
            (ReturnStatus.APPROVED, ReturnEvent.SUBMIT_PACKAGE_INFO, ReturnStatus.APPROVED),
            (ReturnStatus.APPROVED, ReturnEvent.SHIPMENT_CREATED, ReturnStatus.SHIPPING),
            (ReturnStatus.APPROVED, ReturnEvent.SHIPMENT_TIMEOUT, ReturnStatus.CANCELLED),
            (ReturnStatus.SHIPPING, ReturnEvent.PICKUP_TIMEOUT, ReturnStatus.APPROVED),
            (ReturnStatus.SHIPPING, ReturnEvent.COURIER_SHIPMENT_FAILED, ReturnStatus.APPROVED),
            (ReturnStatus.SHIPPING, ReturnEvent.COURIER_LOST_PACKAGE, ReturnStatus.AUTO_REFUNDED),
            (ReturnStatus.SHIPPING, ReturnEvent.TRANSIT_TIMEOUT, ReturnStatus.AUTO_REFUNDED),
            (ReturnStatus.SHIPPING, ReturnEvent.TRACKING_UPDATE, ReturnStatus.SHIPPING),
            (ReturnStatus.SHIPPING, ReturnEvent.SHOP_CONFIRM_RECEIPT, ReturnStatus.REFUNDED),
            (ReturnStatus.SHIPPING, ReturnEvent.SHOP_DISPUTE, ReturnStatus.REJECTED),
            (ReturnStatus.SHIPPING, ReturnEvent.DISPOSITION_TIMEOUT, ReturnStatus.AUTO_REFUNDED),
        ],
    )
    def test_allowed_edges(self, status, event, expected):
        assert resolve_transition(status, event) == expected

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES))
    def test_terminal_states_accept_nothing(self, status):
        for event in EVENT_TRANSITIONS:
            with pytest.raises(InvalidTransition) as exc_info:
                resolve_transition(status, event)
            assert "terminal" in exc_info.value.message
        assert get_allowed_events(status) == []

    def test_approve_twice_is_invalid(self):
        with pytest.raises(InvalidTransition) as exc_info:
            resolve_transition(ReturnStatus.APPROVED, ReturnEvent.SHOP_APPROVE)
        assert exc_info.value.current_status == ReturnStatus.APPROVED
        assert exc_info.value.code == "INVALID_TRANSITION"

    def test_refund_without_return_only_from_pending(self):
        with pytest.raises(InvalidTransition):
            resolve_transition(ReturnStatus.APPROVED, ReturnEvent.SHOP_REFUND_WITHOUT_RETURN)
        with pytest.raises(InvalidTransition):
            resolve_transition(ReturnStatus.SHIPPING, ReturnEvent.SHOP_REFUND_WITHOUT_RETURN)

    def test_shipment_timeout_only_from_approved(self):
        with pytest.raises(InvalidTransition):
            resolve_transition(ReturnStatus.PENDING, ReturnEvent.SHIPMENT_TIMEOUT)
        with pytest.raises(InvalidTransition):
            resolve_transition(ReturnStatus.SHIPPING, ReturnEvent.SHIPMENT_TIMEOUT)

    def test_unknown_event(self):
        with pytest.raises(ValueError):
            resolve_transition(ReturnStatus.PENDING, "TELEPORT")


class TestTransitionGraph:

    def test_every_edge_joins_known_statuses(self):
        statuses = set(ReturnStatus.all())
        for edges in EVENT_TRANSITIONS.values():
            assert set(edges) <= statuses
            assert set(edges.values()) <= statuses

    def test_no_edge_leaves_a_terminal_state(self):
        for status in TERMINAL_STATUSES:
            assert is_terminal(status)
            assert all(status not in edges for edges in EVENT_TRANSITIONS.values())

    def test_every_active_status_can_be_left(self):
        for status in set(ReturnStatus.all()) - TERMINAL_STATUSES:
            assert get_allowed_events(status)

    def test_shipping_events(self):
        assert set(get_allowed_events(ReturnStatus.SHIPPING)) == {
            ReturnEvent.PICKUP_TIMEOUT,
            ReturnEvent.COURIER_SHIPMENT_FAILED,
            ReturnEvent.COURIER_LOST_PACKAGE,
            ReturnEvent.TRANSIT_TIMEOUT,
            ReturnEvent.TRACKING_UPDATE,
            ReturnEvent.SHOP_CONFIRM_RECEIPT,
            ReturnEvent.SHOP_DISPUTE,
            ReturnEvent.DISPOSITION_TIMEOUT,
        }

    def test_refund_statuses(self):
        assert triggers_refund(ReturnStatus.REFUNDED)
        assert triggers_refund(ReturnStatus.AUTO_REFUNDED)
        assert not triggers_refund(ReturnStatus.REJECTED)
        assert not triggers_refund(ReturnStatus.CANCELLED)

    def test_each_deadline_kind_waits_on_a_non_terminal_status(self):
        for kind in DeadlineKind.all():
            status = DEADLINE_EXPECTED_STATUS[kind]
            assert not is_terminal(status)

    def test_status_labels(self):
        assert get_status_label(ReturnStatus.SHIPPING) == "Returning"
        assert get_status_label("SOMETHING_ELSE") == "SOMETHING_ELSE"


class TestImports:

    @pytest.mark.parametrize(
        "module",
        ["app.schemas.return_request", "app.services", "app.services.return_orchestrator", "app.main"],
    )
    def test_module_imports_in_a_fresh_interpreter(self, module):
        result = subprocess.run(
            [sys.executable, "-c", f"import {module}"],
            cwd=Path(__file__).resolve().parent.parent,
            capture_output=True,
            text=True,
            timeout=60,
        )
        assert result.returncode == 0, result.stderr
