"""Interactive subscription, vault and secret selection.

Menus are numbered lists read with click.prompt. An invalid number is
only re-prompted after the user confirms "try again?"; declining raises
SelectionAborted, which ends the run without an error.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TypeVar

import click

from .control_plane import CloudControlPlane, ResourceNotFoundError
from .local_state import LocalStateStore, SubscriptionSelection, VaultCache
from .log_levels import SUCCESS
from .models import ResourceRef
from .session import SessionOrchestrator

logger = logging.getLogger(__name__)

T = TypeVar("T")

SECRET_SEPARATOR = "-" * 40


class SelectionAborted(Exception):
    """Raised when the user leaves a menu or declines to retry."""

    pass


class SecretUnavailableError(Exception):
    """Raised when a requested secret could not be read in time."""

    pass


def ask_retry() -> None:
    """Ask whether to try again.

    Raises:
        SelectionAborted: If the user declines.
    """
    if not click.confirm("Do you want to try again?", default=False):
        raise SelectionAborted("Selection cancelled")


def choose_from_list(items: Sequence[T], label: str) -> T:
    """Prompt for a 1-based index into items.

    Raises:
        SelectionAborted: If the user declines to retry after an invalid entry.
    """
    count = len(items)
    while True:
        raw = click.prompt(
            f"Enter the number of the {label} you want to select (1-{count})",
            default="",
            show_default=False,
        )
        raw = raw.strip()
        if raw.isdigit() and 1 <= int(raw) <= count:
            return items[int(raw) - 1]
        logger.error(f"Invalid selection. Please enter a number between 1 and {count}.")
        ask_retry()


# =============================================================================
# Subscription
# =============================================================================


def choose_subscription(
    control_plane: CloudControlPlane, store: LocalStateStore
) -> SubscriptionSelection:
    """Show the subscription menu and persist the choice.

    Raises:
        ResourceNotFoundError: If the caller can see no subscriptions.
        SelectionAborted: If the user declines to retry.
    """
    logger.info("Available subscriptions:")
    subscriptions = control_plane.list_subscriptions()
    if not subscriptions:
        raise ResourceNotFoundError("No subscriptions found.")

    for i, sub in enumerate(subscriptions, start=1):
        click.echo(f"{i}. {sub.name} (ID: {sub.subscription_id}, State: {sub.state})")
    click.echo()

    chosen = choose_from_list(subscriptions, "subscription")
    selection = SubscriptionSelection(
        subscription_id=chosen.subscription_id, subscription_name=chosen.name
    )
    store.save_subscription(selection)
    return selection


def resolve_subscription(
    control_plane: CloudControlPlane,
    store: LocalStateStore,
    *,
    override: str | None = None,
    confirm: bool = True,
) -> SubscriptionSelection:
    """Determine the subscription to work in and activate it.

    Precedence: explicit override, then the persisted selection (confirmed
    with the user unless confirm is False), then the interactive menu.

    Raises:
        ResourceNotFoundError: If the override is not visible to the caller.
    """
    if override:
        match = next(
            (
                s
                for s in control_plane.list_subscriptions()
                if s.subscription_id.lower() == override.lower()
            ),
            None,
        )
        if match is None:
            raise ResourceNotFoundError(f"Subscription {override} not found or not accessible")
        selection = SubscriptionSelection(
            subscription_id=match.subscription_id, subscription_name=match.name
        )
    else:
        saved = store.load_subscription()
        if saved is not None:
            logger.info(f"Using configured subscription: {saved.subscription_name}")
        if saved is not None and (not confirm or click.confirm("Is this correct?", default=True)):
            selection = saved
        else:
            selection = choose_subscription(control_plane, store)

    control_plane.use_subscription(selection.subscription_id)
    logger.log(SUCCESS, f"Using subscription: {selection.subscription_name}")
    return selection


# =============================================================================
# Vault
# =============================================================================


def resolve_named_vault(control_plane: CloudControlPlane, name: str) -> ResourceRef:
    """Resolve a vault given on the command line. Not found is fatal."""
    return control_plane.resolve_resource(name)


class InteractiveVaultSelector:
    """Vault menu, usable as a SessionOrchestrator resource selector."""

    def __init__(self, store: LocalStateStore, subscription: SubscriptionSelection) -> None:
        self._store = store
        self.subscription = subscription

    def __call__(self, control_plane: CloudControlPlane) -> ResourceRef:
        while True:
            click.echo()
            logger.info("Available options:")
            click.echo("1. List all Key Vaults (with caching)")
            click.echo("2. Enter vault name directly")
            click.echo("3. Reconfigure subscription")
            click.echo("4. Exit")

            choice = click.prompt("Choose an option (1-4)", default="", show_default=False).strip()
            match choice:
                case "1":
                    return self._select_from_list(control_plane)
                case "2":
                    return self._enter_name(control_plane)
                case "3":
                    self.subscription = choose_subscription(control_plane, self._store)
                    control_plane.use_subscription(self.subscription.subscription_id)
                case "4":
                    logger.info("Exiting...")
                    raise SelectionAborted("Exited from vault menu")
                case _:
                    logger.error("Invalid choice. Please try again.")

    def load_vaults(self, control_plane: CloudControlPlane) -> VaultCache:
        """Return the vault listing, refreshing the cache when it is stale."""
        subscription_id = self.subscription.subscription_id
        cache = self._store.load_cache()

        if cache is None:
            return self._store.refresh_cache(control_plane, subscription_id)
        if not self._store.is_cache_valid(cache, subscription_id):
            logger.warning("Cache is stale or belongs to another subscription, refreshing...")
            return self._store.refresh_cache(control_plane, subscription_id)

        logger.info(f"Using cached data from: {cache.refreshed_at:%Y-%m-%d %H:%M:%S}")
        if click.confirm("Do you want to refresh the cache?", default=False):
            return self._store.refresh_cache(control_plane, subscription_id)
        return cache

    def _select_from_list(self, control_plane: CloudControlPlane) -> ResourceRef:
        cache = self.load_vaults(control_plane)
        if not cache.vaults:
            logger.error("No vaults found in cache.")
            raise SelectionAborted("No vaults to select from")

        click.echo()
        logger.info("Cached Key Vaults:")
        for i, vault in enumerate(cache.vaults, start=1):
            click.echo(f"{i}. {vault.name} (RG: {vault.resource_group}, Location: {vault.location})")
        click.echo()

        while True:
            vault = choose_from_list(cache.vaults, "vault")
            try:
                return control_plane.resolve_resource(vault.name)
            except ResourceNotFoundError:
                logger.error(f"Key Vault '{vault.name}' not found or not accessible.")
                ask_retry()

    def _enter_name(self, control_plane: CloudControlPlane) -> ResourceRef:
        while True:
            name = click.prompt("Enter the Key Vault name", default="", show_default=False).strip()
            if not name:
                logger.error("Vault name cannot be empty.")
                continue
            try:
                return control_plane.resolve_resource(name)
            except ResourceNotFoundError:
                logger.error(f"Key Vault '{name}' not found or not accessible.")
                ask_retry()


# =============================================================================
# Secrets
# =============================================================================


def print_secret(name: str, value: str) -> None:
    """Write a secret value to stdout between separator lines. Never logged."""
    logger.log(SUCCESS, f"Secret value for '{name}':")
    click.echo(SECRET_SEPARATOR)
    click.echo(value)
    click.echo(SECRET_SEPARATOR)


def interactive_secret_menu(orchestrator: SessionOrchestrator) -> int:
    """List secrets and print the chosen ones until the user stops.

    Returns:
        Number of secrets printed. An empty vault, a declined retry or a
        read timeout all end the menu without an error.
    """
    resource = orchestrator.session.require_resource()
    secrets = orchestrator.list_secrets()
    if not secrets:
        logger.info(f"No secrets found in vault '{resource.name}'. This is normal for empty vaults.")
        return 0

    retrieved = 0
    while True:
        logger.info("Available secrets:")
        for i, secret in enumerate(secrets, start=1):
            updated = f"{secret.updated:%Y-%m-%d %H:%M:%S}" if secret.updated else "unknown"
            click.echo(f"{i}. {secret.name} (Enabled: {secret.enabled}, Updated: {updated})")
        click.echo()

        try:
            chosen = choose_from_list(secrets, "secret")
        except SelectionAborted:
            return retrieved

        value = orchestrator.read_secret(chosen.name)
        if value is None:
            return retrieved
        print_secret(chosen.name, value)
        retrieved += 1

        click.echo()
        if not click.confirm("Do you want to retrieve another secret?", default=False):
            return retrieved
        click.echo()


def retrieve_named_secrets(orchestrator: SessionOrchestrator, names: Sequence[str]) -> int:
    """Print each named secret.

    Raises:
        SecretUnavailableError: If any secret could not be read before the
            poll timeout. The remaining names are still attempted.
    """
    missing: list[str] = []
    for name in names:
        value = orchestrator.read_secret(name)
        if value is None:
            missing.append(name)
            continue
        print_secret(name, value)

    if missing:
        raise SecretUnavailableError(f"Could not retrieve: {', '.join(missing)}")
    return len(names)
