"""
Tests for capability sets and the pause flag (src/access_control.py)

Tests:
- Address validation
- Owner defaults and role queries
- Grants, revocations and role-specific errors
- Ownership transfer
- Pause gating and the audit log
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import ALICE, BOB, OWNER

from access_control import (
    ZERO_ADDRESS,
    AccessControl,
    Role,
    is_valid_address,
    validate_address,
)
from route_exceptions import (
    ContractNotPaused,
    ContractPaused,
    InvalidAddress,
    NotAuthorized,
    NotOperator,
    NotPauser,
)


@pytest.fixture
def access():
    return AccessControl(OWNER)


class TestAddressValidation:
    @pytest.mark.parametrize("principal", [None, "", ZERO_ADDRESS, " " + ZERO_ADDRESS])
    def test_invalid(self, principal):
        assert is_valid_address(principal) is False
        with pytest.raises(InvalidAddress):
            validate_address(principal)

    def test_valid(self):
        assert validate_address(ALICE) == ALICE

    def test_owner_must_be_valid(self):
        with pytest.raises(InvalidAddress):
            AccessControl(ZERO_ADDRESS)


class TestRoles:
    def test_owner_holds_every_capability(self, access):
        for role in Role:
            assert access.has_role(OWNER, role) is True

    def test_stranger_holds_nothing(self, access):
        for role in Role:
            assert access.has_role(ALICE, role) is False
        assert access.has_role(None, Role.OPERATOR) is False

    def test_grant_and_revoke(self, access):
        assert access.grant_role(Role.OPERATOR, ALICE) is True
        assert access.grant_role(Role.OPERATOR, ALICE) is False
        assert access.has_role(ALICE, Role.OPERATOR) is True
        assert access.has_role(ALICE, Role.PAUSER) is False

        assert access.revoke_role(Role.OPERATOR, ALICE) is True
        assert access.revoke_role(Role.OPERATOR, ALICE) is False
        assert access.has_role(ALICE, Role.OPERATOR) is False

    def test_administrator_not_grantable(self, access):
        with pytest.raises(ValueError):
            access.grant_role(Role.ADMINISTRATOR, ALICE)
        with pytest.raises(ValueError):
            access.revoke_role(Role.ADMINISTRATOR, OWNER)

    def test_grant_zero_address(self, access):
        with pytest.raises(InvalidAddress):
            access.grant_role(Role.PAUSER, ZERO_ADDRESS)

    def test_members(self, access):
        access.grant_role(Role.PAUSER, BOB)
        assert access.members(Role.PAUSER) == sorted([OWNER, BOB])
        assert access.members(Role.ADMINISTRATOR) == [OWNER]

    @pytest.mark.parametrize(
        "role, error",
        [(Role.ADMINISTRATOR, NotAuthorized), (Role.OPERATOR, NotOperator), (Role.PAUSER, NotPauser)],
    )
    def test_require_role_errors(self, access, role, error):
        with pytest.raises(error) as exc_info:
            access.require_role(ALICE, role, "some_operation")
        assert exc_info.value.context.operation == "some_operation"

    def test_denials_are_audited(self, access):
        with pytest.raises(NotOperator):
            access.require_role(ALICE, Role.OPERATOR, "process")

        (entry,) = access.get_audit_log(action_filter="access_denied")
        assert entry["principal"] == ALICE
        assert entry["operation"] == "process"


class TestOwnership:
    def test_transfer(self, access):
        assert access.transfer_ownership(ALICE) == OWNER
        assert access.owner == ALICE
        assert access.has_role(ALICE, Role.ADMINISTRATOR) is True
        assert access.has_role(OWNER, Role.ADMINISTRATOR) is False

    def test_transfer_keeps_other_memberships(self, access):
        access.transfer_ownership(ALICE)

        assert access.has_role(OWNER, Role.OPERATOR) is True
        assert access.has_role(OWNER, Role.PAUSER) is True
        assert access.has_role(ALICE, Role.OPERATOR) is False

    def test_transfer_to_zero_address(self, access):
        with pytest.raises(InvalidAddress):
            access.transfer_ownership(ZERO_ADDRESS)
        assert access.owner == OWNER


class TestPause:
    def test_pause_gates(self, access):
        access.require_not_paused("create_request")
        with pytest.raises(ContractNotPaused):
            access.require_paused("emergency_withdraw")

        access.set_paused(True)

        assert access.paused is True
        access.require_paused("emergency_withdraw")
        with pytest.raises(ContractPaused):
            access.require_not_paused("create_request")

    def test_state_roundtrip_through_dict(self, access):
        access.grant_role(Role.OPERATOR, ALICE)
        access.set_paused(True)

        restored = AccessControl(BOB)
        restored.load_dict(access.to_dict())

        assert restored.owner == OWNER
        assert restored.paused is True
        assert restored.has_role(ALICE, Role.OPERATOR) is True
        assert restored.has_role(BOB, Role.OPERATOR) is False
