"""Tests for the temporary role assignment."""

from __future__ import annotations

import pytest
from cloud_mock import FakeControlPlane

from vault_operator.config import DEFAULT_ROLE_NAME
from vault_operator.control_plane import AlreadyExistsError
from vault_operator.models import AccessSession, RoleAssignmentInfo, RoleGrantOutcome
from vault_operator.roles import RoleGuard


@pytest.fixture
def session(control_plane: FakeControlPlane) -> AccessSession:
    vault = control_plane.state.add_vault("kv-prod")
    return AccessSession(resource=vault.ref, principal="alice", principal_id="oid-1")


@pytest.fixture
def guard(control_plane: FakeControlPlane) -> RoleGuard:
    return RoleGuard(control_plane)


def existing_assignment(session: AccessSession) -> RoleAssignmentInfo:
    scope = session.require_resource().resource_id
    return RoleAssignmentInfo(
        assignment_id=f"{scope}/providers/Microsoft.Authorization/roleAssignments/pre",
        name="pre",
        scope=scope,
        role_name=DEFAULT_ROLE_NAME,
        principal_id=session.principal_id,
    )


class TestGrant:
    """Tests for RoleGuard.grant()."""

    def test_creates_new_assignment(
        self, guard: RoleGuard, control_plane: FakeControlPlane, session: AccessSession
    ) -> None:
        """Test that a missing assignment is created and flagged."""
        outcome = guard.grant(session)

        assert outcome == RoleGrantOutcome.CREATED_NEW
        assert session.role_granted_this_session is True
        assert session.role_grant_outcome == RoleGrantOutcome.CREATED_NEW
        assert len(control_plane.state.role_assignments) == 1

    def test_existing_assignment_is_kept(
        self, guard: RoleGuard, control_plane: FakeControlPlane, session: AccessSession
    ) -> None:
        """Test that a pre-existing assignment yields ALREADY_PRESENT without creation."""
        control_plane.state.role_assignments.append(existing_assignment(session))

        outcome = guard.grant(session)

        assert outcome == RoleGrantOutcome.ALREADY_PRESENT
        assert session.role_granted_this_session is False
        assert "create_role_assignment" not in control_plane.call_names()

    def test_create_failure_is_degraded(
        self, guard: RoleGuard, control_plane: FakeControlPlane, session: AccessSession
    ) -> None:
        """Test that a failed creation is CREATE_FAILED and not flagged for removal."""
        control_plane.fail("create_role_assignment", AlreadyExistsError("RoleAssignmentExists"))

        outcome = guard.grant(session)

        assert outcome == RoleGrantOutcome.CREATE_FAILED
        assert session.role_granted_this_session is False

    def test_list_failure_falls_through_to_create(
        self, guard: RoleGuard, control_plane: FakeControlPlane, session: AccessSession
    ) -> None:
        """Test that an unreadable assignment list is treated as empty."""
        control_plane.fail("list_role_assignments")

        assert guard.grant(session) == RoleGrantOutcome.CREATED_NEW

    def test_custom_role_name(self, control_plane: FakeControlPlane, session: AccessSession) -> None:
        """Test that the configured role name is used."""
        guard = RoleGuard(control_plane, "Key Vault Secrets User")

        guard.grant(session)

        assert control_plane.state.role_assignments[0].role_name == "Key Vault Secrets User"


class TestRevoke:
    """Tests for RoleGuard.revoke()."""

    def test_revokes_assignment_created_this_session(
        self, guard: RoleGuard, control_plane: FakeControlPlane, session: AccessSession
    ) -> None:
        """Test that a new assignment is deleted once."""
        guard.grant(session)

        guard.revoke(session)
        guard.revoke(session)

        assert control_plane.call_names().count("delete_role_assignment") == 1
        assert control_plane.state.role_assignments == []
        assert session.role_granted_this_session is False

    def test_pre_existing_assignment_not_deleted(
        self, guard: RoleGuard, control_plane: FakeControlPlane, session: AccessSession
    ) -> None:
        """Test that ALREADY_PRESENT is never revoked."""
        control_plane.state.role_assignments.append(existing_assignment(session))
        guard.grant(session)

        guard.revoke(session)

        assert "delete_role_assignment" not in control_plane.call_names()
        assert len(control_plane.state.role_assignments) == 1

    def test_create_failed_not_deleted(
        self, guard: RoleGuard, control_plane: FakeControlPlane, session: AccessSession
    ) -> None:
        """Test that CREATE_FAILED is never revoked."""
        control_plane.fail("create_role_assignment")
        guard.grant(session)

        guard.revoke(session)

        assert "delete_role_assignment" not in control_plane.call_names()

    def test_revoke_failure_is_logged(
        self, guard: RoleGuard, control_plane: FakeControlPlane, session: AccessSession, caplog
    ) -> None:
        """Test that a failed deletion is reported and the flag consumed."""
        guard.grant(session)
        control_plane.fail("delete_role_assignment")

        guard.revoke(session)

        assert session.role_granted_this_session is False
        assert "Failed to remove role" in caplog.text
