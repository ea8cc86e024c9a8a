"""Abstract control plane used by the access guards.

The guards never talk to Azure directly. Everything they need from the
provider goes through CloudControlPlane, which keeps the session logic
testable against an in-memory fake. AzureControlPlane in
azure_control_plane.py is the production implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .models import (
    CallerIdentity,
    LockInfo,
    NetworkPolicy,
    ResourceRef,
    RoleAssignmentInfo,
    ScopeKind,
    SecretSummary,
    SubscriptionInfo,
    VaultSummary,
)


class ControlPlaneError(Exception):
    """Base error for control plane operations."""

    pass


class AlreadyExistsError(ControlPlaneError):
    """Raised when the object being created already exists."""

    pass


class ResourceNotFoundError(ControlPlaneError):
    """Raised when the addressed object does not exist."""

    pass


class CloudControlPlane(ABC):
    """Provider operations needed for one temporary access session."""

    @abstractmethod
    def resolve_caller_identity(self) -> CallerIdentity:
        """Return the signed-in principal."""

    @abstractmethod
    def resolve_resource(self, name: str) -> ResourceRef:
        """Resolve a vault name to its ARM identity.

        Raises:
            ResourceNotFoundError: If no vault with that name is visible.
        """

    @abstractmethod
    def read_network_policy(self, resource: ResourceRef) -> NetworkPolicy:
        """Return the vault's network ACL summary."""

    @abstractmethod
    def list_locks(self, resource: ResourceRef) -> list[LockInfo]:
        """List management locks applying at the resource scope."""

    @abstractmethod
    def delete_lock(self, scope_kind: ScopeKind, scope_id: str, name: str) -> None:
        """Delete a management lock at the given scope."""

    @abstractmethod
    def create_lock(
        self,
        scope_kind: ScopeKind,
        scope_id: str,
        name: str,
        notes: str | None = None,
    ) -> None:
        """Create a CanNotDelete lock at the given scope."""

    @abstractmethod
    def add_network_allow_entry(self, resource: ResourceRef, address: str) -> None:
        """Add an address to the vault firewall.

        Raises:
            AlreadyExistsError: If the address is already allowed.
        """

    @abstractmethod
    def remove_network_allow_entry(self, resource: ResourceRef, address: str) -> None:
        """Remove an address from the vault firewall."""

    @abstractmethod
    def list_role_assignments(
        self, principal_id: str, scope: str, role_name: str
    ) -> list[RoleAssignmentInfo]:
        """List assignments of role_name to the principal at exactly scope."""

    @abstractmethod
    def create_role_assignment(self, principal_id: str, scope: str, role_name: str) -> None:
        """Assign role_name to the principal at scope."""

    @abstractmethod
    def delete_role_assignment(self, principal_id: str, scope: str, role_name: str) -> None:
        """Delete the assignment of role_name to the principal at scope."""

    @abstractmethod
    def list_secrets(self, resource: ResourceRef) -> list[SecretSummary]:
        """List secret metadata in the vault."""

    @abstractmethod
    def read_secret(self, resource: ResourceRef, name: str) -> str | None:
        """Read the current value of a secret."""

    @abstractmethod
    def resolve_caller_public_address(self) -> str:
        """Return the public IP address the vault will see."""

    @abstractmethod
    def list_subscriptions(self) -> list[SubscriptionInfo]:
        """List subscriptions visible to the caller."""

    @abstractmethod
    def list_resources(self) -> list[VaultSummary]:
        """List vaults in the active subscription."""

    @abstractmethod
    def use_subscription(self, subscription_id: str) -> None:
        """Make subscription_id the active subscription for later calls."""
