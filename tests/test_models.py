"""Tests for the session data model."""

from __future__ import annotations

import pytest
from cloud_mock import vault_resource_id

from vault_operator.models import (
    AccessSession,
    LockRecord,
    NetworkPolicy,
    ResourceRef,
    RoleGrantOutcome,
    ScopeKind,
    SessionInvariantError,
    SessionPhase,
    SessionStateError,
)

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"


class TestResourceRef:
    """Tests for ARM id parsing."""

    def test_from_resource_id(self) -> None:
        """Test that name, group and subscription are derived from the id."""
        ref = ResourceRef.from_resource_id(
            vault_resource_id("kv-prod", "rg-prod", SUBSCRIPTION_ID),
            vault_uri="https://kv-prod.vault.azure.net/",
        )

        assert ref.name == "kv-prod"
        assert ref.resource_group == "rg-prod"
        assert ref.subscription_id == SUBSCRIPTION_ID
        assert ref.subscription_scope == f"/subscriptions/{SUBSCRIPTION_ID}"
        assert ref.vault_uri == "https://kv-prod.vault.azure.net/"

    def test_case_insensitive_segments(self) -> None:
        """Test that ARM segment names are matched case-insensitively."""
        ref = ResourceRef.from_resource_id(
            f"/SUBSCRIPTIONS/{SUBSCRIPTION_ID}/resourcegroups/rg/PROVIDERS/Microsoft.KeyVault/vaults/kv"
        )

        assert ref.resource_group == "rg"

    @pytest.mark.parametrize(
        "resource_id",
        ["", "kv-prod", f"/subscriptions/{SUBSCRIPTION_ID}", f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg"],
    )
    def test_invalid_ids_rejected(self, resource_id: str) -> None:
        """Test that non-resource ids are rejected."""
        with pytest.raises(ValueError):
            ResourceRef.from_resource_id(resource_id)

    def test_is_frozen(self) -> None:
        """Test that references are immutable."""
        ref = ResourceRef.from_resource_id(vault_resource_id("kv"))
        with pytest.raises(AttributeError):
            ref.name = "other"  # type: ignore[misc]


class TestNetworkPolicy:
    """Tests for NetworkPolicy."""

    @pytest.mark.parametrize(("action", "restricted"), [("Deny", True), ("deny", True), ("Allow", False)])
    def test_is_restricted(self, action: str, restricted: bool) -> None:
        """Test that only Deny counts as restricted."""
        assert NetworkPolicy(default_action=action).is_restricted is restricted


class TestLockRecord:
    """Tests for LockRecord."""

    def test_describe(self) -> None:
        """Test the log description of a lock."""
        record = LockRecord("rg-prod-lock", ScopeKind.RESOURCE_GROUP, "rg-prod")
        assert record.describe() == "rg-prod-lock (resource-group level)"


class TestPhaseTransitions:
    """Tests for AccessSession.advance()."""

    def test_forward_path(self) -> None:
        """Test the full forward path through every phase."""
        session = AccessSession()
        for phase in (
            SessionPhase.AUTHENTICATED,
            SessionPhase.RESOURCE_SELECTED,
            SessionPhase.ACCESS_GRANTING,
            SessionPhase.OPERATIONAL,
            SessionPhase.REVERTING,
            SessionPhase.CLOSED,
        ):
            session.advance(phase)
        assert session.phase == SessionPhase.CLOSED

    @pytest.mark.parametrize(
        "start",
        [
            SessionPhase.INIT,
            SessionPhase.AUTHENTICATED,
            SessionPhase.RESOURCE_SELECTED,
            SessionPhase.ACCESS_GRANTING,
            SessionPhase.OPERATIONAL,
        ],
    )
    def test_any_active_phase_may_revert(self, start: SessionPhase) -> None:
        """Test that every non-terminal phase can jump to REVERTING."""
        session = AccessSession(phase=start)
        session.advance(SessionPhase.REVERTING)
        assert session.phase == SessionPhase.REVERTING

    def test_skipping_phases_rejected(self) -> None:
        """Test that phases cannot be skipped."""
        with pytest.raises(SessionStateError):
            AccessSession().advance(SessionPhase.OPERATIONAL)

    def test_closed_is_terminal(self) -> None:
        """Test that nothing follows CLOSED."""
        session = AccessSession(phase=SessionPhase.CLOSED)
        with pytest.raises(SessionStateError):
            session.advance(SessionPhase.REVERTING)

    def test_reverting_twice_rejected(self) -> None:
        """Test that REVERTING cannot be re-entered."""
        session = AccessSession(phase=SessionPhase.REVERTING)
        with pytest.raises(SessionStateError):
            session.advance(SessionPhase.REVERTING)


class TestInvariants:
    """Tests for AccessSession.check_invariants()."""

    def test_fresh_session_is_valid(self) -> None:
        """Test that a new session passes."""
        AccessSession().check_invariants()

    def test_rule_without_address(self) -> None:
        """Test that a rule flag without an address is rejected."""
        with pytest.raises(SessionInvariantError, match="caller_address"):
            AccessSession(network_rule_added=True).check_invariants()

    def test_locks_without_network_change(self) -> None:
        """Test that removed locks require an attempted network change."""
        session = AccessSession(locks_removed=[LockRecord("a", ScopeKind.RESOURCE, "id")])
        with pytest.raises(SessionInvariantError, match="network change"):
            session.check_invariants()

    def test_role_flag_requires_created_new(self) -> None:
        """Test that the role flag is only valid for a CREATED_NEW grant."""
        session = AccessSession(
            role_granted_this_session=True, role_grant_outcome=RoleGrantOutcome.ALREADY_PRESENT
        )
        with pytest.raises(SessionInvariantError, match="CREATED_NEW"):
            session.check_invariants()

    def test_closed_with_pending_rollback(self) -> None:
        """Test that a closed session must hold no unreverted changes."""
        session = AccessSession(
            phase=SessionPhase.CLOSED,
            role_granted_this_session=True,
            role_grant_outcome=RoleGrantOutcome.CREATED_NEW,
        )
        with pytest.raises(SessionInvariantError, match="unreverted"):
            session.check_invariants()

    def test_require_resource(self) -> None:
        """Test that guards refuse to run before a vault is selected."""
        with pytest.raises(SessionStateError):
            AccessSession().require_resource()
