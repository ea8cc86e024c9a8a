"""In-memory control plane for session tests.

Provides a FakeControlPlane implementing CloudControlPlane over plain
Python state, so guard and session behaviour can be tested without Azure.

Key Features:
- In-memory vaults, locks, role assignments and subscriptions
- Ordered call log for rollback ordering assertions
- Failure injection per method
- Firewall propagation delay simulation

Usage:
    from cloud_mock import FakeControlPlane

    cp = FakeControlPlane()
    cp.state.add_vault("kv-prod", default_action="Deny", secrets={"db": "s3cret"})
    cp.state.add_lock("rg-prod-lock", ScopeKind.RESOURCE_GROUP, "rg-secrets")

    orchestrator = SessionOrchestrator(cp, config, sleep=lambda _: None, progress=None)
    ...
    assert cp.state.lock_names() == ["rg-prod-lock"]
"""

from .control_plane import MUTATING_METHODS, FakeControlPlane
from .state import (
    DEFAULT_CALLER_ADDRESS,
    DEFAULT_PRINCIPAL,
    DEFAULT_PRINCIPAL_ID,
    DEFAULT_RESOURCE_GROUP,
    DEFAULT_SUBSCRIPTION_ID,
    FakeCloudState,
    FakeLock,
    FakeVault,
    vault_resource_id,
)

__all__ = [
    "DEFAULT_CALLER_ADDRESS",
    "DEFAULT_PRINCIPAL",
    "DEFAULT_PRINCIPAL_ID",
    "DEFAULT_RESOURCE_GROUP",
    "DEFAULT_SUBSCRIPTION_ID",
    "MUTATING_METHODS",
    "FakeCloudState",
    "FakeControlPlane",
    "FakeLock",
    "FakeVault",
    "vault_resource_id",
]
