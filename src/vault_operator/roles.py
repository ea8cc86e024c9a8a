"""Temporary role assignment for secret access.

The operator is granted the configured data-plane role at the vault scope
for the session. Only an assignment created by this session is removed at
the end; an assignment that already existed belongs to someone else's
access model and is left alone.
"""

from __future__ import annotations

import logging

from .config import DEFAULT_ROLE_NAME
from .control_plane import CloudControlPlane, ControlPlaneError
from .log_levels import SUCCESS
from .models import AccessSession, RoleGrantOutcome
from .security import log_security_audit_event

logger = logging.getLogger(__name__)


class RoleGuard:
    """Grants and revokes a role assignment at the vault scope."""

    def __init__(self, control_plane: CloudControlPlane, role_name: str = DEFAULT_ROLE_NAME) -> None:
        self._cp = control_plane
        self._role_name = role_name

    @property
    def role_name(self) -> str:
        return self._role_name

    def grant(self, session: AccessSession) -> RoleGrantOutcome:
        """Ensure the principal holds the role at the vault scope.

        Args:
            session: Current session; role_granted_this_session is set only
                when a new assignment is created.

        Returns:
            ALREADY_PRESENT, CREATED_NEW or CREATE_FAILED.
        """
        resource = session.require_resource()
        scope = resource.resource_id
        logger.info(f"Assigning {self._role_name} role for vault: {resource.name}")

        try:
            existing = self._cp.list_role_assignments(session.principal_id, scope, self._role_name)
        except ControlPlaneError as e:
            logger.warning("Failed to list role assignments.", extra={"error": str(e)})
            existing = []

        if existing:
            logger.info(f"{self._role_name} role already assigned to {session.principal} at this scope.")
            outcome = RoleGrantOutcome.ALREADY_PRESENT
        else:
            try:
                self._cp.create_role_assignment(session.principal_id, scope, self._role_name)
            except ControlPlaneError as e:
                logger.warning(
                    "Failed to create role assignment (it may already exist or there was an "
                    "error). Proceeding.",
                    extra={"error": str(e), "role": self._role_name},
                )
                outcome = RoleGrantOutcome.CREATE_FAILED
            else:
                logger.log(SUCCESS, f"{self._role_name} role assigned successfully")
                outcome = RoleGrantOutcome.CREATED_NEW

        session.role_grant_outcome = outcome
        session.role_granted_this_session = outcome == RoleGrantOutcome.CREATED_NEW
        log_security_audit_event(
            "role_assignment", session.principal, scope, "grant", outcome.value
        )
        return outcome

    def revoke(self, session: AccessSession) -> None:
        """Delete the assignment if, and only if, this session created it."""
        if not session.role_granted_this_session:
            if session.role_grant_outcome == RoleGrantOutcome.ALREADY_PRESENT:
                logger.info(f"Keeping pre-existing {self._role_name} role assignment.")
            return

        resource = session.require_resource()
        scope = resource.resource_id
        session.role_granted_this_session = False

        logger.info(f"Removing {self._role_name} role for vault: {resource.name}")
        try:
            self._cp.delete_role_assignment(session.principal_id, scope, self._role_name)
        except ControlPlaneError as e:
            logger.warning(
                "Failed to remove role or role didn't exist", extra={"error": str(e)}
            )
            log_security_audit_event("role_assignment", session.principal, scope, "revoke", "failure")
            return

        logger.log(SUCCESS, f"{self._role_name} role removed successfully")
        log_security_audit_event("role_assignment", session.principal, scope, "revoke", "success")
