"""Session data model for temporary vault access.

One AccessSession exists per run. Every guard receives it explicitly and
records the side effects it made, so rollback is a function of the
session alone:

- network_rule_added -> the firewall entry must be removed
- role_granted_this_session -> the role assignment must be deleted
- locks_removed -> the locks must be recreated

Rollback clears each field as it consumes it, which makes a second
rollback a no-op.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

# /subscriptions/{sub}/resourceGroups/{rg}/providers/{namespace}/{type}/{name}
RESOURCE_ID_PATTERN = re.compile(
    r"^/subscriptions/(?P<subscription>[^/]+)"
    r"/resourceGroups/(?P<resource_group>[^/]+)"
    r"/providers/(?P<namespace>[^/]+)/(?P<type>[^/]+)/(?P<name>[^/]+)$",
    re.IGNORECASE,
)


class ScopeKind(str, Enum):
    """Administrative scope a protection lock belongs to."""

    RESOURCE = "resource"
    RESOURCE_GROUP = "resource-group"
    SUBSCRIPTION = "subscription"


class LockLevel(str, Enum):
    """Azure management lock levels."""

    CAN_NOT_DELETE = "CanNotDelete"
    READ_ONLY = "ReadOnly"


class SessionPhase(str, Enum):
    """Lifecycle phases of an access session."""

    INIT = "init"
    AUTHENTICATED = "authenticated"
    RESOURCE_SELECTED = "resource_selected"
    ACCESS_GRANTING = "access_granting"
    OPERATIONAL = "operational"
    REVERTING = "reverting"
    CLOSED = "closed"


# Forward edges only; any non-terminal phase may also jump to REVERTING.
ALLOWED_TRANSITIONS: dict[SessionPhase, frozenset[SessionPhase]] = {
    SessionPhase.INIT: frozenset({SessionPhase.AUTHENTICATED}),
    SessionPhase.AUTHENTICATED: frozenset({SessionPhase.RESOURCE_SELECTED}),
    SessionPhase.RESOURCE_SELECTED: frozenset({SessionPhase.ACCESS_GRANTING}),
    SessionPhase.ACCESS_GRANTING: frozenset({SessionPhase.OPERATIONAL}),
    SessionPhase.OPERATIONAL: frozenset(),
    SessionPhase.REVERTING: frozenset({SessionPhase.CLOSED}),
    SessionPhase.CLOSED: frozenset(),
}


class PollResult(str, Enum):
    """Outcome of a bounded poll."""

    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"


class NetworkGrantResult(str, Enum):
    """Outcome of a network access grant."""

    GRANTED = "granted"
    BLOCKED = "blocked"


class RoleGrantOutcome(str, Enum):
    """Outcome of a role grant. Exactly one is produced per call."""

    ALREADY_PRESENT = "already_present"
    CREATED_NEW = "created_new"
    CREATE_FAILED = "create_failed"


class SessionStateError(Exception):
    """Raised on an illegal session phase transition."""

    pass


class SessionInvariantError(Exception):
    """Raised when the session bookkeeping is internally inconsistent."""

    pass


@dataclass(frozen=True)
class ResourceRef:
    """Identifier of the target vault and its parent scopes."""

    resource_id: str
    name: str
    resource_group: str
    subscription_id: str
    vault_uri: str | None = None

    @property
    def subscription_scope(self) -> str:
        """ARM scope string of the owning subscription."""
        return f"/subscriptions/{self.subscription_id}"

    @classmethod
    def from_resource_id(cls, resource_id: str, vault_uri: str | None = None) -> ResourceRef:
        """Parse an ARM resource id.

        Args:
            resource_id: Full ARM id of the resource.
            vault_uri: Data-plane endpoint, if known.

        Returns:
            ResourceRef with resource group and subscription derived from the id.

        Raises:
            ValueError: If the id is not a resource-group scoped ARM id.
        """
        match = RESOURCE_ID_PATTERN.match(resource_id or "")
        if not match:
            raise ValueError(f"Not a resource-group scoped ARM resource id: {resource_id!r}")
        return cls(
            resource_id=resource_id,
            name=match.group("name"),
            resource_group=match.group("resource_group"),
            subscription_id=match.group("subscription"),
            vault_uri=vault_uri,
        )


@dataclass(frozen=True)
class LockRecord:
    """A delete-protection lock observed at session start.

    scope_kind is inferred from the lock name, not read from Azure.
    """

    name: str
    scope_kind: ScopeKind
    scope_id: str
    notes: str | None = None

    def describe(self) -> str:
        return f"{self.name} ({self.scope_kind.value} level)"


@dataclass(frozen=True)
class LockInfo:
    """A lock as returned by the control plane."""

    name: str
    level: LockLevel
    notes: str | None = None
    lock_id: str | None = None


@dataclass(frozen=True)
class NetworkPolicy:
    """Network ACL summary of a vault."""

    default_action: str = "Allow"
    ip_rules: tuple[str, ...] = ()

    @property
    def is_restricted(self) -> bool:
        return self.default_action.lower() == "deny"


@dataclass(frozen=True)
class RoleAssignmentInfo:
    """A role assignment as returned by the control plane."""

    assignment_id: str
    name: str
    scope: str
    role_name: str
    principal_id: str


@dataclass(frozen=True)
class CallerIdentity:
    """The signed-in operator."""

    principal: str
    principal_id: str
    tenant_id: str | None = None


@dataclass(frozen=True)
class SecretSummary:
    """Secret metadata (never the value)."""

    name: str
    enabled: bool | None = None
    created: datetime | None = None
    updated: datetime | None = None


@dataclass(frozen=True)
class SubscriptionInfo:
    """An Azure subscription visible to the operator."""

    subscription_id: str
    name: str
    state: str | None = None


@dataclass(frozen=True)
class VaultSummary:
    """A Key Vault in the selected subscription."""

    name: str
    resource_group: str
    location: str
    resource_id: str


@dataclass
class AccessSession:
    """Mutable state of one access session.

    Owned exclusively by the SessionOrchestrator for the lifetime of a run.
    """

    resource: ResourceRef | None = None
    principal: str = ""
    principal_id: str = ""
    caller_address: str | None = None
    locks_removed: list[LockRecord] = field(default_factory=list)
    network_change_attempted: bool = False
    network_rule_added: bool = False
    role_granted_this_session: bool = False
    role_grant_outcome: RoleGrantOutcome | None = None
    phase: SessionPhase = SessionPhase.INIT

    def advance(self, target: SessionPhase) -> None:
        """Move to the next phase.

        Raises:
            SessionStateError: If the transition is not allowed.
        """
        allowed = ALLOWED_TRANSITIONS[self.phase]
        entering_rollback = target == SessionPhase.REVERTING and self.phase not in (
            SessionPhase.REVERTING,
            SessionPhase.CLOSED,
        )
        if target not in allowed and not entering_rollback:
            raise SessionStateError(f"Illegal transition {self.phase.value} -> {target.value}")
        self.phase = target

    def require_resource(self) -> ResourceRef:
        """Return the selected resource.

        Raises:
            SessionStateError: If no resource has been selected yet.
        """
        if self.resource is None:
            raise SessionStateError("Session has no resource selected")
        return self.resource

    @property
    def has_pending_rollback(self) -> bool:
        return bool(self.network_rule_added or self.role_granted_this_session or self.locks_removed)

    def check_invariants(self) -> None:
        """Validate session bookkeeping.

        Raises:
            SessionInvariantError: If any invariant is violated.
        """
        errors: list[str] = []

        if self.network_rule_added and not self.caller_address:
            errors.append("network_rule_added requires caller_address")

        if self.locks_removed and not self.network_change_attempted:
            errors.append("locks_removed requires an attempted network change")

        if self.role_granted_this_session and self.role_grant_outcome != RoleGrantOutcome.CREATED_NEW:
            errors.append("role_granted_this_session requires a CREATED_NEW grant")

        if self.phase == SessionPhase.CLOSED and self.has_pending_rollback:
            errors.append("closed session still holds unreverted side effects")

        if errors:
            raise SessionInvariantError("; ".join(errors))
