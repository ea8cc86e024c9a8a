"""Lock scope inference.

Azure returns every lock that applies to a resource when listing at the
resource scope, including locks inherited from the resource group and
subscription. Deleting or recreating one requires the scope it was
defined at. By convention lock names carry that scope as a prefix:

    rg-*   resource group lock
    sub-*  subscription lock
    other  resource lock
"""

from __future__ import annotations

from .models import LockInfo, LockLevel, ResourceRef, ScopeKind

RESOURCE_GROUP_PREFIX = "rg-"
SUBSCRIPTION_PREFIX = "sub-"


class ScopeResolver:
    """Maps lock names to the scope they were created at."""

    @staticmethod
    def resolve(lock_name: str) -> ScopeKind:
        """Infer the scope kind from the lock name. Pure and total."""
        if lock_name.startswith(RESOURCE_GROUP_PREFIX):
            return ScopeKind.RESOURCE_GROUP
        if lock_name.startswith(SUBSCRIPTION_PREFIX):
            return ScopeKind.SUBSCRIPTION
        return ScopeKind.RESOURCE

    @classmethod
    def bind(cls, lock_name: str, resource: ResourceRef) -> tuple[ScopeKind, str]:
        """Resolve the scope kind and the identifier it binds to.

        Returns:
            (scope kind, scope id) where the id is the resource group name,
            the subscription scope string, or the resource id.
        """
        kind = cls.resolve(lock_name)
        match kind:
            case ScopeKind.RESOURCE_GROUP:
                return kind, resource.resource_group
            case ScopeKind.SUBSCRIPTION:
                return kind, resource.subscription_scope
            case ScopeKind.RESOURCE:
                return kind, resource.resource_id

    @staticmethod
    def is_protection_lock(lock: LockInfo) -> bool:
        """Only CanNotDelete locks block the firewall change."""
        return lock.level == LockLevel.CAN_NOT_DELETE
