"""Temporary removal and restoration of delete-protection locks.

A CanNotDelete lock also blocks property updates through some resource
providers, Key Vault network ACL changes among them. LockGuard snapshots
the locks before touching anything so they can be recreated with the
same name, scope and notes once the session ends.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .config import DEFAULT_LOCK_SETTLE_SECONDS
from .control_plane import CloudControlPlane, ControlPlaneError
from .log_levels import SUCCESS
from .models import LockRecord, ResourceRef
from .scope_resolver import ScopeResolver
from .security import log_security_audit_event

logger = logging.getLogger(__name__)


class LockGuard:
    """Captures, removes and restores CanNotDelete locks on a resource."""

    def __init__(
        self,
        control_plane: CloudControlPlane,
        *,
        resolver: ScopeResolver | None = None,
        settle_seconds: float = DEFAULT_LOCK_SETTLE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        principal: str = "",
    ) -> None:
        self._cp = control_plane
        self._resolver = resolver or ScopeResolver()
        self._settle_seconds = settle_seconds
        self._sleep = sleep
        self.principal = principal

    def capture(self, resource: ResourceRef) -> list[LockRecord]:
        """Snapshot the delete-protection locks affecting the resource.

        Side-effect free. ReadOnly locks are ignored entirely.

        Args:
            resource: Target resource.

        Returns:
            Lock records in the order the control plane listed them.
        """
        logger.info(f"Checking for resource locks on vault: {resource.name}")

        locks = self._cp.list_locks(resource)
        if not locks:
            logger.info("No locks impacting this resource.")
            return []

        records: list[LockRecord] = []
        for lock in locks:
            if not self._resolver.is_protection_lock(lock):
                logger.debug(
                    "Ignoring non-delete lock",
                    extra={"lock_name": lock.name, "level": lock.level.value},
                )
                continue
            kind, scope_id = self._resolver.bind(lock.name, resource)
            records.append(
                LockRecord(name=lock.name, scope_kind=kind, scope_id=scope_id, notes=lock.notes)
            )

        if not records:
            logger.info("No CanNotDelete locks found.")
            return []

        for record in records:
            logger.warning(f"- {record.describe()}")
        return records

    def remove(self, records: list[LockRecord]) -> list[LockRecord]:
        """Delete each lock at its own scope.

        A failure on one lock is logged and the batch continues. When at
        least one lock was removed, waits for the settle delay before
        returning so the caller can rely on the change.

        Args:
            records: Locks returned by capture().

        Returns:
            The records that were actually removed, in capture order.
        """
        if not records:
            logger.info("No locks to remove.")
            return []

        logger.info("Removing CanNotDelete resource locks to allow firewall modifications...")

        removed: list[LockRecord] = []
        for record in records:
            logger.info(f"Removing lock: {record.describe()} for scope: {record.scope_id}")
            try:
                self._cp.delete_lock(record.scope_kind, record.scope_id, record.name)
            except ControlPlaneError as e:
                logger.warning(
                    f"Failed to remove lock: {record.describe()}",
                    extra={"error": str(e)},
                )
                log_security_audit_event(
                    "lock", self.principal, record.scope_id, "remove", "failure"
                )
                continue
            logger.log(SUCCESS, f"Removed lock: {record.describe()}")
            log_security_audit_event("lock", self.principal, record.scope_id, "remove", "success")
            removed.append(record)

        if not removed:
            logger.warning("No locks were removed.")
            return []

        logger.log(SUCCESS, "Resource locks removed successfully.")
        if self._settle_seconds > 0:
            self._sleep(self._settle_seconds)
        return removed

    def restore(self, records: list[LockRecord]) -> int:
        """Recreate each lock with its original name, scope and notes.

        Every record is attempted exactly once, in capture order. Failures
        are logged and do not stop the remaining restores.

        Returns:
            Number of locks recreated.
        """
        if not records:
            return 0

        logger.info("Restoring original resource locks...")
        restored = 0
        failed: list[str] = []
        for record in records:
            logger.info(f"Restoring lock: {record.describe()}")
            try:
                self._cp.create_lock(record.scope_kind, record.scope_id, record.name, record.notes)
            except ControlPlaneError as e:
                logger.warning(
                    f"Failed to restore lock: {record.describe()}",
                    extra={"error": str(e), "scope_id": record.scope_id},
                )
                log_security_audit_event(
                    "lock", self.principal, record.scope_id, "restore", "failure"
                )
                failed.append(record.name)
                continue
            logger.log(SUCCESS, f"Restored lock: {record.describe()}")
            log_security_audit_event("lock", self.principal, record.scope_id, "restore", "success")
            restored += 1

        if failed:
            logger.error(
                "Some locks could not be restored; recreate them manually",
                extra={"missing_locks": failed},
            )
        return restored
