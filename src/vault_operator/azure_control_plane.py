"""Azure SDK implementation of the control plane.

Management plane calls go through the azure-mgmt-* clients bound to the
selected subscription; secret reads go through the Key Vault data plane.
Every Azure SDK error is translated into a ControlPlaneError at this
boundary so the guards only ever deal with one exception hierarchy.

SECURITY: Credentials come exclusively from security.get_operator_credential().
"""

from __future__ import annotations

import base64
import ipaddress
import json
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
)
from azure.core.exceptions import ResourceNotFoundError as AzureResourceNotFoundError
from azure.core.rest import HttpRequest
from azure.keyvault.secrets import SecretClient
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters
from azure.mgmt.keyvault import KeyVaultManagementClient
from azure.mgmt.keyvault.models import (
    IPRule,
    NetworkRuleSet,
    VaultPatchParameters,
    VaultPatchProperties,
)
from azure.mgmt.resource import SubscriptionClient
from azure.mgmt.resource.locks import ManagementLockClient
from azure.mgmt.resource.locks.models import ManagementLockObject

from .config import DEFAULT_IP_LOOKUP_URL
from .control_plane import (
    AlreadyExistsError,
    CloudControlPlane,
    ControlPlaneError,
    ResourceNotFoundError,
)
from .models import (
    RESOURCE_ID_PATTERN,
    CallerIdentity,
    LockInfo,
    LockLevel,
    NetworkPolicy,
    ResourceRef,
    RoleAssignmentInfo,
    ScopeKind,
    SecretSummary,
    SubscriptionInfo,
    VaultSummary,
)

logger = logging.getLogger(__name__)

ARM_TOKEN_SCOPE = "https://management.azure.com/.default"
KEY_VAULT_DNS_SUFFIX = "vault.azure.net"
IP_LOOKUP_TIMEOUT_SECONDS = 10
SCOPE_LOCKED_ERROR_CODE = "ScopeLocked"


def _error_code(error: HttpResponseError) -> str | None:
    return getattr(error.error, "code", None)


@contextmanager
def azure_errors(action: str) -> Iterator[None]:
    """Translate Azure SDK exceptions into ControlPlaneError subclasses.

    A 409 caused by a management lock (ScopeLocked) is a plain
    ControlPlaneError, not AlreadyExistsError.
    """
    try:
        yield
    except ClientAuthenticationError as e:
        raise ControlPlaneError(f"{action}: not authenticated, run 'az login' ({e.message})") from e
    except HttpResponseError as e:
        if _error_code(e) == SCOPE_LOCKED_ERROR_CODE:
            raise ControlPlaneError(f"{action}: scope is locked ({e.message})") from e
        if isinstance(e, ResourceExistsError) or e.status_code == 409:
            raise AlreadyExistsError(f"{action}: {e.message}") from e
        if isinstance(e, AzureResourceNotFoundError) or e.status_code == 404:
            raise ResourceNotFoundError(f"{action}: {e.message}") from e
        raise ControlPlaneError(f"{action}: HTTP {e.status_code} {e.message}") from e
    except AzureError as e:
        raise ControlPlaneError(f"{action}: {e}") from e


def decode_token_claims(token: str) -> dict[str, Any]:
    """Decode the (unverified) payload of a JWT access token.

    The token comes straight from the credential; it is only read for the
    caller's own object id and user name.
    """
    try:
        payload = token.split(".")[1]
        padded = payload + "=" * (-len(payload) % 4)
        return json.loads(base64.urlsafe_b64decode(padded))
    except (IndexError, ValueError) as e:
        raise ControlPlaneError("Access token is not a JWT") from e


def _enum_value(value: Any) -> str:
    return str(getattr(value, "value", value))


def _normalize_address(address: str) -> str:
    return address[:-3] if address.endswith("/32") else address


def _resource_group_from_id(resource_id: str) -> str:
    match = RESOURCE_ID_PATTERN.match(resource_id)
    return match.group("resource_group") if match else ""


class AzureControlPlane(CloudControlPlane):
    """CloudControlPlane backed by the Azure management and Key Vault SDKs."""

    def __init__(
        self,
        credential: TokenCredential,
        subscription_id: str | None = None,
        *,
        ip_lookup_url: str = DEFAULT_IP_LOOKUP_URL,
    ) -> None:
        self._credential = credential
        self._subscription_id = subscription_id
        self._ip_lookup_url = ip_lookup_url
        self._clients: dict[str, Any] = {}
        self._role_definition_ids: dict[tuple[str, str], str] = {}

    @property
    def subscription_id(self) -> str | None:
        return self._subscription_id

    def use_subscription(self, subscription_id: str) -> None:
        """Switch all management clients to another subscription."""
        if subscription_id != self._subscription_id:
            self._subscription_id = subscription_id
            self._clients.clear()
            self._role_definition_ids.clear()

    def _client(self, kind: str) -> Any:
        if not self._subscription_id:
            raise ControlPlaneError("No subscription selected")
        if kind not in self._clients:
            factory = {
                "keyvault": KeyVaultManagementClient,
                "locks": ManagementLockClient,
                "authorization": AuthorizationManagementClient,
            }[kind]
            self._clients[kind] = factory(
                credential=self._credential, subscription_id=self._subscription_id
            )
        return self._clients[kind]

    # -------------------------------------------------------------------------
    # Identity and discovery
    # -------------------------------------------------------------------------

    def resolve_caller_identity(self) -> CallerIdentity:
        with azure_errors("resolve caller identity"):
            token = self._credential.get_token(ARM_TOKEN_SCOPE).token
        claims = decode_token_claims(token)
        principal_id = claims.get("oid")
        if not principal_id:
            raise ControlPlaneError("Access token carries no object id (oid) claim")
        principal = (
            claims.get("upn")
            or claims.get("unique_name")
            or claims.get("preferred_username")
            or principal_id
        )
        return CallerIdentity(principal=principal, principal_id=principal_id, tenant_id=claims.get("tid"))

    def list_subscriptions(self) -> list[SubscriptionInfo]:
        with azure_errors("list subscriptions"):
            client = SubscriptionClient(credential=self._credential)
            return [
                SubscriptionInfo(
                    subscription_id=sub.subscription_id,
                    name=sub.display_name,
                    state=_enum_value(sub.state) if sub.state else None,
                )
                for sub in client.subscriptions.list()
            ]

    def list_resources(self) -> list[VaultSummary]:
        with azure_errors("list key vaults"):
            return [
                VaultSummary(
                    name=vault.name,
                    resource_group=_resource_group_from_id(vault.id),
                    location=vault.location,
                    resource_id=vault.id,
                )
                for vault in self._client("keyvault").vaults.list_by_subscription()
            ]

    def resolve_resource(self, name: str) -> ResourceRef:
        with azure_errors(f"resolve key vault '{name}'"):
            for vault in self._client("keyvault").vaults.list_by_subscription():
                if vault.name.lower() == name.lower():
                    vault_uri = vault.properties.vault_uri if vault.properties else None
                    return ResourceRef.from_resource_id(vault.id, vault_uri=vault_uri)
        raise ResourceNotFoundError(f"Key Vault '{name}' not found or not accessible")

    # -------------------------------------------------------------------------
    # Network ACLs
    # -------------------------------------------------------------------------

    def _network_acls(self, resource: ResourceRef) -> Any:
        vault = self._client("keyvault").vaults.get(resource.resource_group, resource.name)
        return vault.properties.network_acls if vault.properties else None

    def read_network_policy(self, resource: ResourceRef) -> NetworkPolicy:
        with azure_errors(f"read network policy of '{resource.name}'"):
            acls = self._network_acls(resource)
        if acls is None:
            return NetworkPolicy()
        return NetworkPolicy(
            default_action=_enum_value(acls.default_action or "Allow"),
            ip_rules=tuple(rule.value for rule in acls.ip_rules or []),
        )

    def _update_ip_rules(self, resource: ResourceRef, acls: Any, ip_rules: list[IPRule]) -> None:
        patch = VaultPatchParameters(
            properties=VaultPatchProperties(
                network_acls=NetworkRuleSet(
                    bypass=acls.bypass,
                    default_action=acls.default_action,
                    ip_rules=ip_rules,
                    virtual_network_rules=acls.virtual_network_rules,
                )
            )
        )
        self._client("keyvault").vaults.update(resource.resource_group, resource.name, patch)

    def add_network_allow_entry(self, resource: ResourceRef, address: str) -> None:
        with azure_errors(f"add network rule to '{resource.name}'"):
            acls = self._network_acls(resource)
            if acls is None:
                raise ControlPlaneError(f"Key Vault '{resource.name}' has no network ACLs")
            rules = list(acls.ip_rules or [])
            if any(_normalize_address(r.value) == _normalize_address(address) for r in rules):
                raise AlreadyExistsError(f"{address} is already allowed on '{resource.name}'")
            self._update_ip_rules(resource, acls, [*rules, IPRule(value=address)])

    def remove_network_allow_entry(self, resource: ResourceRef, address: str) -> None:
        with azure_errors(f"remove network rule from '{resource.name}'"):
            acls = self._network_acls(resource)
            rules = list(acls.ip_rules or []) if acls is not None else []
            kept = [r for r in rules if _normalize_address(r.value) != _normalize_address(address)]
            if len(kept) == len(rules):
                raise ResourceNotFoundError(f"{address} is not allowed on '{resource.name}'")
            self._update_ip_rules(resource, acls, kept)

    # -------------------------------------------------------------------------
    # Management locks
    # -------------------------------------------------------------------------

    def list_locks(self, resource: ResourceRef) -> list[LockInfo]:
        match = RESOURCE_ID_PATTERN.match(resource.resource_id)
        if not match:
            raise ControlPlaneError(f"Cannot list locks for {resource.resource_id}")

        with azure_errors(f"list locks on '{resource.name}'"):
            locks = self._client("locks").management_locks.list_at_resource_level(
                resource_group_name=match.group("resource_group"),
                resource_provider_namespace=match.group("namespace"),
                parent_resource_path="",
                resource_type=match.group("type"),
                resource_name=match.group("name"),
            )
            result: list[LockInfo] = []
            for lock in locks:
                level = _enum_value(lock.level)
                try:
                    lock_level = LockLevel(level)
                except ValueError:
                    logger.debug("Skipping lock with unknown level", extra={"level": level})
                    continue
                result.append(
                    LockInfo(name=lock.name, level=lock_level, notes=lock.notes, lock_id=lock.id)
                )
            return result

    def delete_lock(self, scope_kind: ScopeKind, scope_id: str, name: str) -> None:
        locks = self._client("locks").management_locks
        with azure_errors(f"delete lock '{name}'"):
            match scope_kind:
                case ScopeKind.RESOURCE:
                    locks.delete_by_scope(scope=scope_id, lock_name=name)
                case ScopeKind.RESOURCE_GROUP:
                    locks.delete_at_resource_group_level(resource_group_name=scope_id, lock_name=name)
                case ScopeKind.SUBSCRIPTION:
                    locks.delete_at_subscription_level(lock_name=name)

    def create_lock(
        self,
        scope_kind: ScopeKind,
        scope_id: str,
        name: str,
        notes: str | None = None,
    ) -> None:
        locks = self._client("locks").management_locks
        parameters = ManagementLockObject(level=LockLevel.CAN_NOT_DELETE.value, notes=notes)
        with azure_errors(f"create lock '{name}'"):
            match scope_kind:
                case ScopeKind.RESOURCE:
                    locks.create_or_update_by_scope(
                        scope=scope_id, lock_name=name, parameters=parameters
                    )
                case ScopeKind.RESOURCE_GROUP:
                    locks.create_or_update_at_resource_group_level(
                        resource_group_name=scope_id, lock_name=name, parameters=parameters
                    )
                case ScopeKind.SUBSCRIPTION:
                    locks.create_or_update_at_subscription_level(
                        lock_name=name, parameters=parameters
                    )

    # -------------------------------------------------------------------------
    # Role assignments
    # -------------------------------------------------------------------------

    def _role_definition_id(self, scope: str, role_name: str) -> str:
        key = (scope.lower(), role_name)
        if key not in self._role_definition_ids:
            definitions = list(
                self._client("authorization").role_definitions.list(
                    scope, filter=f"roleName eq '{role_name}'"
                )
            )
            if not definitions:
                raise ResourceNotFoundError(f"Role definition '{role_name}' not found")
            self._role_definition_ids[key] = definitions[0].id
        return self._role_definition_ids[key]

    def _matching_assignments(self, principal_id: str, scope: str, role_name: str) -> list[Any]:
        definition_guid = self._role_definition_id(scope, role_name).rsplit("/", 1)[-1].lower()
        assignments = self._client("authorization").role_assignments.list_for_scope(
            scope, filter=f"principalId eq '{principal_id}'"
        )
        return [
            a
            for a in assignments
            if (a.scope or "").lower() == scope.lower()
            and (a.role_definition_id or "").lower().endswith(definition_guid)
        ]

    def list_role_assignments(
        self, principal_id: str, scope: str, role_name: str
    ) -> list[RoleAssignmentInfo]:
        with azure_errors(f"list '{role_name}' assignments"):
            return [
                RoleAssignmentInfo(
                    assignment_id=a.id,
                    name=a.name,
                    scope=a.scope,
                    role_name=role_name,
                    principal_id=a.principal_id,
                )
                for a in self._matching_assignments(principal_id, scope, role_name)
            ]

    def create_role_assignment(self, principal_id: str, scope: str, role_name: str) -> None:
        with azure_errors(f"create '{role_name}' assignment"):
            parameters = RoleAssignmentCreateParameters(
                role_definition_id=self._role_definition_id(scope, role_name),
                principal_id=principal_id,
            )
            self._client("authorization").role_assignments.create(
                scope, str(uuid.uuid4()), parameters
            )

    def delete_role_assignment(self, principal_id: str, scope: str, role_name: str) -> None:
        with azure_errors(f"delete '{role_name}' assignment"):
            assignments = self._matching_assignments(principal_id, scope, role_name)
            if not assignments:
                raise ResourceNotFoundError(f"No '{role_name}' assignment at {scope}")
            for assignment in assignments:
                self._client("authorization").role_assignments.delete(scope, assignment.name)

    # -------------------------------------------------------------------------
    # Data plane
    # -------------------------------------------------------------------------

    def _secret_client(self, resource: ResourceRef) -> SecretClient:
        vault_url = resource.vault_uri or f"https://{resource.name}.{KEY_VAULT_DNS_SUFFIX}"
        return SecretClient(vault_url=vault_url, credential=self._credential)

    def list_secrets(self, resource: ResourceRef) -> list[SecretSummary]:
        with azure_errors(f"list secrets in '{resource.name}'"):
            return [
                SecretSummary(
                    name=props.name,
                    enabled=props.enabled,
                    created=props.created_on,
                    updated=props.updated_on,
                )
                for props in self._secret_client(resource).list_properties_of_secrets()
            ]

    def read_secret(self, resource: ResourceRef, name: str) -> str | None:
        with azure_errors(f"read secret '{name}'"):
            return self._secret_client(resource).get_secret(name).value

    def resolve_caller_public_address(self) -> str:
        with azure_errors("resolve public IP address"):
            client = PipelineClient(base_url=self._ip_lookup_url)
            response = client.send_request(
                HttpRequest("GET", self._ip_lookup_url),
                connection_timeout=IP_LOOKUP_TIMEOUT_SECONDS,
                read_timeout=IP_LOOKUP_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            address = response.text().strip()
        try:
            ipaddress.ip_address(address)
        except ValueError as e:
            raise ControlPlaneError(f"IP lookup returned an invalid address: {address!r}") from e
        return address
