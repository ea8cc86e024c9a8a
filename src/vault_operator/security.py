"""Security enforcement for the operator's own credentials.

The operator acts with the identity of the human running it, taken from
their Azure CLI login. It refuses to run with service principal secrets
in the environment so that every temporary grant is attributable to a
person in the Entra ID audit log.

SECURITY INVARIANTS:
1. No service principal secret, certificate or password variables may be set
2. AzureCliCredential is the only credential type used
3. Secret values are never written to logs
"""

from __future__ import annotations

import logging
import os

from azure.identity import AzureCliCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate non-interactive credential use
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "SECURITY VIOLATION: {env_var} is set. "
    "Temporary vault access must be requested by a signed-in user "
    "(run 'az login'), not by a service principal secret or password. "
    "Unset the variable and try again."
)


class SecretlessViolationError(Exception):
    """Raised when credential secrets are present in the environment.

    Fatal: the operator must not change any access control while one is set.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.debug(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified", "credential_type": "AzureCli"},
    )


def get_operator_credential() -> AzureCliCredential:
    """Get the signed-in user's Azure CLI credential.

    This is the ONLY way to obtain credentials in this codebase.

    Returns:
        AzureCliCredential bound to the current 'az login' session.

    Raises:
        SecretlessViolationError: If credential environment variables are detected.
    """
    enforce_secretless_architecture()

    return AzureCliCredential()


def log_security_audit_event(
    event_type: str,
    principal: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log an access-control change made on behalf of the operator.

    Args:
        event_type: Kind of change (network_rule, role_assignment, lock).
        principal: Identity the change was made for.
        target_resource: ARM id of the affected resource.
        action: grant or revoke.
        result: success, failure or skipped.
    """
    logger.debug(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "principal": principal,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
