"""Temporary firewall access to a Key Vault.

When the vault firewall denies by default, the caller's public address is
added to the IP allow-list for the session and removed again afterwards.
Locks that would block the ACL update are removed through LockGuard and
recorded on the session for restoration.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from .control_plane import CloudControlPlane, ControlPlaneError
from .locks import LockGuard
from .log_levels import SUCCESS
from .models import AccessSession, NetworkGrantResult, PollResult
from .propagation import PropagationPoller
from .security import log_security_audit_event

logger = logging.getLogger(__name__)


class NetworkAccessGuard:
    """Adds and removes the caller's address on the vault firewall."""

    def __init__(
        self,
        control_plane: CloudControlPlane,
        lock_guard: LockGuard,
        poller: PropagationPoller,
    ) -> None:
        self._cp = control_plane
        self._locks = lock_guard
        self._poller = poller

    def is_restricted(self, session: AccessSession) -> bool:
        """Check whether the vault firewall denies by default."""
        resource = session.require_resource()
        logger.info(f"Checking Key Vault firewall settings for: {resource.name}")
        policy = self._cp.read_network_policy(resource)
        if policy.is_restricted:
            logger.warning("Key Vault firewall is enabled (default action: Deny).")
            return True
        logger.info(
            f"Key Vault firewall allows all access (default action: {policy.default_action})."
        )
        return False

    def grant(
        self,
        session: AccessSession,
        caller_address: str | Callable[[], str],
    ) -> NetworkGrantResult:
        """Open the firewall for the caller.

        Args:
            session: Current session; updated with the caller address, the
                locks removed and the rule flag.
            caller_address: Public IP of the caller, or a callable returning
                it. A callable is only invoked when the firewall is restricted.

        Returns:
            GRANTED when the vault is reachable (or may already be),
            BLOCKED when the address is unknown or protection locks could
            not be removed.
        """
        resource = session.require_resource()

        if not self.is_restricted(session):
            return NetworkGrantResult.GRANTED

        if callable(caller_address):
            try:
                caller_address = caller_address()
            except ControlPlaneError as e:
                logger.error("Failed to get current IP address.", extra={"error": str(e)})
                return NetworkGrantResult.BLOCKED

        session.caller_address = caller_address
        session.network_change_attempted = True

        records = self._locks.capture(resource)
        if records:
            logger.warning("Resource locks detected. Temporarily removing to modify firewall.")
            removed = self._locks.remove(records)
            session.locks_removed.extend(removed)
            if not removed:
                logger.error("Failed to remove resource locks. Cannot modify firewall.")
                return NetworkGrantResult.BLOCKED

        logger.info(f"Adding IP {caller_address} to Key Vault firewall...")
        try:
            self._cp.add_network_allow_entry(resource, caller_address)
        except ControlPlaneError as e:
            # Access may already be sufficient; the entry is not ours to remove.
            logger.warning(
                "Failed to add IP to firewall or IP already exists.",
                extra={"error": str(e), "address": caller_address},
            )
            log_security_audit_event(
                "network_rule", session.principal, resource.resource_id, "grant", "skipped"
            )
            return NetworkGrantResult.GRANTED

        session.network_rule_added = True
        logger.log(SUCCESS, f"IP address {caller_address} added to firewall rules.")
        log_security_audit_event(
            "network_rule", session.principal, resource.resource_id, "grant", "success"
        )

        def probe() -> bool:
            self._cp.list_secrets(resource)
            return True

        result = self._poller.poll(probe, description="firewall access")
        if result == PollResult.SUCCEEDED:
            logger.log(SUCCESS, "Firewall rule propagated and access confirmed.")
        else:
            logger.warning(
                f"Timeout waiting for firewall access after {self._poller.timeout:g} seconds. "
                "Continuing anyway."
            )
        return NetworkGrantResult.GRANTED

    def revoke(self, session: AccessSession) -> None:
        """Remove the allow-list entry added by grant().

        Does nothing unless this session added the entry. A failure is
        logged and not retried; the flag is consumed either way.
        """
        if not session.network_rule_added:
            return

        resource = session.require_resource()
        address = session.caller_address or ""
        session.network_rule_added = False

        logger.info(f"Removing IP {address} from Key Vault firewall...")
        try:
            self._cp.remove_network_allow_entry(resource, address)
        except ControlPlaneError as e:
            logger.warning("Failed to remove IP from firewall.", extra={"error": str(e)})
            log_security_audit_event(
                "network_rule", session.principal, resource.resource_id, "revoke", "failure"
            )
            return

        logger.log(SUCCESS, f"IP address {address} removed from firewall rules.")
        log_security_audit_event(
            "network_rule", session.principal, resource.resource_id, "revoke", "success"
        )
