"""
Pure state machine and role permission tests (no database).
"""

import itertools

import pytest

from stockroute.errors import ValidationError
from stockroute.workflow import (
    ALL_STATUSES,
    DELIVERY_TRANSITIONS,
    PACKING_TRANSITIONS,
    TERMINAL_STATUSES,
    TRANSITIONS,
    Role,
    TransferStatus,
    approval_target,
    is_legal_transition,
    is_system_transition,
    parse_role,
    permitted_transitions,
    validate_status,
)


EXPECTED_PAIRS = {
    ("requested", "store_approved"),
    ("requested", "rejected"),
    ("requested", "cancelled"),
    ("store_approved", "warehouse_approved"),
    ("store_approved", "rejected"),
    ("warehouse_approved", "packing"),
    ("packing", "packed"),
    ("packed", "dispatched"),
    ("dispatched", "in_transit"),
    ("in_transit", "delivered"),
}


class TestTransitionTable:

    def test_table_matches_documented_pairs(self):
        assert set(TRANSITIONS) == EXPECTED_PAIRS

    @pytest.mark.parametrize("from_status,to_status", list(itertools.product(ALL_STATUSES, ALL_STATUSES)))
    def test_is_legal_only_for_listed_pairs(self, from_status, to_status):
        assert is_legal_transition(from_status, to_status) == ((from_status, to_status) in EXPECTED_PAIRS)

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES))
    def test_terminal_states_have_no_exits(self, status):
        assert not any(f == status for f, _ in TRANSITIONS)

    def test_system_transitions(self):
        assert is_system_transition("warehouse_approved", "packing")
        assert is_system_transition("packing", "packed")
        assert not is_system_transition("requested", "store_approved")
        assert not is_system_transition("requested", "delivered")

    def test_approval_target(self):
        assert approval_target("requested") == "store_approved"
        assert approval_target("store_approved") == "warehouse_approved"
        assert approval_target("packing") is None

    def test_validate_status_rejects_unknown(self):
        validate_status("packed")
        with pytest.raises(ValidationError):
            validate_status("shipped")


class TestPermittedTransitions:

    def test_store_manager_only_at_store(self):
        at_store = permitted_transitions(Role.STORE_MANAGER, "store")
        assert at_store == {
            (TransferStatus.REQUESTED, TransferStatus.STORE_APPROVED),
            (TransferStatus.REQUESTED, TransferStatus.REJECTED),
        }
        assert permitted_transitions(Role.STORE_MANAGER, "warehouse") == frozenset()

    def test_warehouse_manager_only_at_warehouse(self):
        at_warehouse = permitted_transitions("warehouse_manager", "warehouse")
        assert ("store_approved", "warehouse_approved") in at_warehouse
        assert ("store_approved", "rejected") in at_warehouse
        assert ("requested", "store_approved") in at_warehouse
        assert permitted_transitions("warehouse_manager", "store") == frozenset()

    @pytest.mark.parametrize("role", [Role.LOGISTICS_MANAGER, Role.PACKING_TEAM])
    def test_dispatchers(self, role):
        for location_type in ("store", "warehouse"):
            assert permitted_transitions(role, location_type) == {("packed", "dispatched")}

    def test_logistics_team_moves_goods(self):
        assert permitted_transitions(Role.LOGISTICS_TEAM, "warehouse") == {
            ("dispatched", "in_transit"),
            ("in_transit", "delivered"),
        }

    def test_lineman_grants_nothing(self):
        assert permitted_transitions(Role.LINEMAN, "store") == frozenset()

    def test_no_role_grants_system_or_requester_transitions(self):
        granted = set()
        for role in Role:
            for location_type in ("store", "warehouse"):
                granted |= permitted_transitions(role, location_type)
        assert ("warehouse_approved", "packing") not in granted
        assert ("packing", "packed") not in granted
        assert ("requested", "cancelled") not in granted
        assert granted <= set(TRANSITIONS)

    def test_parse_role(self):
        assert parse_role(" store_manager ") is Role.STORE_MANAGER
        with pytest.raises(ValueError):
            parse_role("cashier")


class TestSubWorkflows:

    def test_packing_is_linear(self):
        assert PACKING_TRANSITIONS == {("pending", "in_progress"), ("in_progress", "completed")}

    def test_delivery_can_fail_until_terminal(self):
        for status in ("pending", "picked_up", "in_transit"):
            assert (status, "failed") in DELIVERY_TRANSITIONS
        assert ("delivered", "failed") not in DELIVERY_TRANSITIONS
        assert ("pending", "in_transit") not in DELIVERY_TRANSITIONS
