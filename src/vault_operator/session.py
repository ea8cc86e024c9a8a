"""Session orchestration with guaranteed rollback.

A session walks through fixed phases:

    INIT -> AUTHENTICATED -> RESOURCE_SELECTED -> ACCESS_GRANTING
         -> OPERATIONAL -> REVERTING -> CLOSED

Any failure jumps straight to REVERTING. Rollback runs exactly once per
session from a finally block, with SIGINT/SIGTERM converted into an
exception beforehand so an interrupted run still unwinds through it, and
ignored while it runs so a second signal cannot cut cleanup short.

Rollback order is fixed: firewall entry, role assignment, then locks.
Locks go back last because a restored CanNotDelete lock could block the
earlier cleanup calls.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from types import FrameType
from typing import Any, TypeVar

from .config import Config
from .control_plane import CloudControlPlane
from .locks import LockGuard
from .log_levels import SUCCESS
from .models import (
    AccessSession,
    CallerIdentity,
    NetworkGrantResult,
    PollResult,
    ResourceRef,
    SecretSummary,
    SessionPhase,
)
from .network import NetworkAccessGuard
from .propagation import ProgressCallback, PropagationPoller, console_progress
from .roles import RoleGuard

logger = logging.getLogger(__name__)

T = TypeVar("T")

ResourceSelector = Callable[[CloudControlPlane], ResourceRef]

TRAPPED_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)


class AccessBlockedError(Exception):
    """Raised when network access to the vault cannot be established."""

    pass


class SessionInterrupted(Exception):
    """Raised from a signal handler when the session is interrupted."""

    def __init__(self, signum: int) -> None:
        self.signum = signum
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(f"Session interrupted by {name}")


def _in_main_thread() -> bool:
    return threading.current_thread() is threading.main_thread()


@contextmanager
def trap_signals() -> Iterator[None]:
    """Convert the first SIGINT or SIGTERM into SessionInterrupted for the block.

    Only one interrupt is raised per block; later signals are logged and
    dropped so they cannot land in the cleanup path that the first one
    started. Signal handlers can only be installed from the main thread;
    elsewhere this is a no-op.
    """
    if not _in_main_thread():
        yield
        return

    interrupted = False

    def handler(signum: int, _frame: FrameType | None) -> None:
        nonlocal interrupted
        if interrupted:
            logger.warning("Cleanup in progress, please wait", extra={"signal": signum})
            return
        interrupted = True
        raise SessionInterrupted(signum)

    previous = {sig: signal.signal(sig, handler) for sig in TRAPPED_SIGNALS}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@contextmanager
def ignore_signals() -> Iterator[None]:
    """Ignore SIGINT and SIGTERM for the block."""
    if not _in_main_thread():
        yield
        return

    previous = {sig: signal.signal(sig, signal.SIG_IGN) for sig in TRAPPED_SIGNALS}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


class SessionOrchestrator:
    """Sequences the access guards and owns rollback for one session.

    Usage:
        orchestrator = SessionOrchestrator(control_plane, config)
        orchestrator.run(select_vault, lambda o: o.read_secret("db-password"))
    """

    def __init__(
        self,
        control_plane: CloudControlPlane,
        config: Config | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        progress: ProgressCallback | None = console_progress,
    ) -> None:
        self._config = config or Config()
        self._cp = control_plane
        self._sleep = sleep

        self.session = AccessSession()
        self.poller = PropagationPoller(
            interval=self._config.poll_interval_seconds,
            timeout=self._config.poll_timeout_seconds,
            sleep=sleep,
            progress=progress,
        )
        self.lock_guard = LockGuard(
            control_plane, settle_seconds=self._config.lock_settle_seconds, sleep=sleep
        )
        self.network_guard = NetworkAccessGuard(control_plane, self.lock_guard, self.poller)
        self.role_guard = RoleGuard(control_plane, self._config.role_name)

        self._rollback_started = False

    @property
    def control_plane(self) -> CloudControlPlane:
        return self._cp

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def authenticate(self) -> CallerIdentity:
        """Resolve the signed-in principal. INIT -> AUTHENTICATED."""
        identity = self._cp.resolve_caller_identity()
        self.session.principal = identity.principal
        self.session.principal_id = identity.principal_id
        self.lock_guard.principal = identity.principal
        self.session.advance(SessionPhase.AUTHENTICATED)
        logger.info(f"Logged in as: {identity.principal}")
        return identity

    def select_resource(self, selector: ResourceSelector) -> ResourceRef:
        """Choose the target vault. AUTHENTICATED -> RESOURCE_SELECTED."""
        resource = selector(self._cp)
        self.session.resource = resource
        self.session.advance(SessionPhase.RESOURCE_SELECTED)
        logger.log(SUCCESS, f"Selected vault: {resource.name}")
        return resource

    def acquire_access(self) -> None:
        """Grant the role and open the firewall. RESOURCE_SELECTED -> ACCESS_GRANTING.

        Raises:
            AccessBlockedError: If network access cannot be established.
        """
        self.session.advance(SessionPhase.ACCESS_GRANTING)

        self.role_guard.grant(self.session)

        settle = self._config.role_settle_seconds
        if settle > 0:
            logger.info(f"Waiting for role assignment to propagate ({settle} seconds)...")
            self._sleep(settle)

        result = self.network_guard.grant(self.session, self._resolve_caller_address)
        if result == NetworkGrantResult.BLOCKED:
            raise AccessBlockedError(
                "Failed to add IP to firewall. Cannot proceed with secret retrieval."
            )

        self.session.check_invariants()

    def _resolve_caller_address(self) -> str:
        logger.info("Getting current public IP address...")
        address = self._cp.resolve_caller_public_address()
        logger.log(SUCCESS, f"Current IP address: {address}")
        return address

    def run(self, selector: ResourceSelector, operation: Callable[[SessionOrchestrator], T]) -> T:
        """Run a complete session and always roll back.

        Args:
            selector: Chooses the vault once the caller is authenticated.
            operation: Protected operation, called with this orchestrator
                once access is in place.

        Returns:
            Whatever the operation returns.

        Raises:
            AccessBlockedError: If access could not be granted.
            SessionInterrupted: If SIGINT or SIGTERM arrived during the session.
        """
        with trap_signals():
            try:
                try:
                    self.authenticate()
                    self.select_resource(selector)
                    self.acquire_access()
                    self.session.advance(SessionPhase.OPERATIONAL)
                    return operation(self)
                finally:
                    self._ensure_rollback()
            except SessionInterrupted:
                # An interrupt landing in the finally block before rollback
                # began escapes it; trap_signals never raises a second one.
                self._ensure_rollback()
                raise

    # -------------------------------------------------------------------------
    # Protected operations
    # -------------------------------------------------------------------------

    def list_secrets(self) -> list[SecretSummary]:
        """List secret metadata in the selected vault, polling until it is readable.

        A new role assignment can take longer than the settle delay to reach
        the data plane, so failed listings are retried by the poller.

        Raises:
            ControlPlaneError: The last listing error, if the vault did not
                become readable before the poll timeout.
        """
        resource = self.session.require_resource()
        logger.info(f"Listing secrets in vault: {resource.name}")
        listed: dict[str, list[SecretSummary]] = {}
        errors: list[Exception] = []

        def probe() -> bool:
            try:
                listed["secrets"] = self._cp.list_secrets(resource)
            except Exception as e:
                errors.append(e)
                raise
            return True

        result = self.poller.poll(probe, description=f"secret listing of '{resource.name}'")
        if result == PollResult.TIMED_OUT:
            logger.warning(
                f"Timeout listing secrets in '{resource.name}' after "
                f"{self.poller.timeout:g} seconds.",
                extra={"attempts": len(errors)},
            )
            raise errors[-1]
        return listed["secrets"]


    def read_secret(self, name: str) -> str | None:
        """Read a secret, polling until the value is available.

        Returns:
            The secret value, or None if it did not become readable before
            the poll timeout.
        """
        resource = self.session.require_resource()
        value: dict[str, str] = {}

        def probe() -> bool:
            secret = self._cp.read_secret(resource, name)
            if secret:
                value["secret"] = secret
                return True
            return False

        result = self.poller.poll(probe, description=f"secret '{name}'")
        if result == PollResult.TIMED_OUT:
            logger.warning(
                f"Timeout retrieving secret '{name}' after {self.poller.timeout:g} seconds."
            )
            return None
        logger.log(SUCCESS, f"Secret value for '{name}' retrieved.")
        return value["secret"]

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    def rollback(self) -> None:
        """Revert every side effect recorded on the session, exactly once.

        Each step is attempted even if an earlier one failed. A second call
        (including one triggered by a signal during rollback) does nothing.
        """
        with ignore_signals():
            if self._rollback_started:
                logger.debug("Rollback already performed; skipping")
                return
            self._rollback_started = True

            self.session.advance(SessionPhase.REVERTING)
            logger.info("Performing cleanup...")

            self._rollback_step("network rule", self.network_guard.revoke, self.session)
            self._rollback_step("role assignment", self.role_guard.revoke, self.session)

            records = list(self.session.locks_removed)
            self.session.locks_removed.clear()
            self._rollback_step("resource locks", self.lock_guard.restore, records)

            self.session.advance(SessionPhase.CLOSED)

        logger.debug("Session closed", extra={"phase": self.session.phase.value})

    def _ensure_rollback(self) -> None:
        # A signal landing before ignore_signals() takes effect surfaces here.
        while not self._rollback_started:
            try:
                self.rollback()
            except SessionInterrupted:
                logger.warning("Interrupt received before cleanup started; cleaning up anyway")

    @staticmethod
    def _rollback_step(name: str, step: Callable[[Any], Any], arg: Any) -> None:
        try:
            step(arg)
        except Exception:
            logger.exception(f"Cleanup of {name} failed; manual cleanup may be required")
