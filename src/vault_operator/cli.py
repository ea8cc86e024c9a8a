"""Zero Trust Vault Operator CLI (ztvo).

Usage:
    ztvo access                       # Interactive vault and secret menus
    ztvo access --vault kv-prod -s db-password
    ztvo subscription                 # Select and persist the subscription
    ztvo cache refresh                # Re-list vaults into the cache
    ztvo cache show                   # Print the cached vault listing
    ztvo info                         # Show configuration and state files
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import click

from . import main as runtime
from .config import VALID_LOG_LEVELS, Config, ConfigurationError, LogFormat
from .local_state import LocalStateStore
from .selection import choose_subscription, resolve_subscription

VERSION = "0.1.0"


def load_config(**overrides: Any) -> Config:
    """Load configuration and set up logging.

    Raises:
        click.ClickException: If the configuration is invalid (exit code 1).
    """
    try:
        config = Config.from_env(**overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    runtime.setup_logging(config.log_format, config.log_level)
    return config


def logging_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Add --log-format and --log-level to a command."""
    func = click.option(
        "--log-level",
        type=click.Choice(VALID_LOG_LEVELS, case_sensitive=False),
        default=None,
        help="Log level (default: ZTVO_LOG_LEVEL or INFO)",
    )(func)
    func = click.option(
        "--log-format",
        type=click.Choice([f.value for f in LogFormat]),
        default=None,
        help="Log output format (default: ZTVO_LOG_FORMAT or text)",
    )(func)
    return func


def state_store(config: Config) -> LocalStateStore:
    return LocalStateStore(config.state_dir, max_age_days=config.cache_max_age_days)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="ztvo")
def cli() -> None:
    """Zero Trust Vault Operator (ztvo).

    Temporary, self-reverting access to Azure Key Vault secrets.

    \b
    Quick Start:
        az login           # Sign in as yourself
        ztvo subscription  # Pick the subscription once
        ztvo access        # Open a vault, read secrets, clean up
    """
    pass


@cli.command()
@click.option("--vault", "-v", "vault_name", help="Key Vault name (skips the vault menu)")
@click.option(
    "--secret",
    "-s",
    "secret_names",
    multiple=True,
    help="Secret to print; repeatable (skips the secret menu)",
)
@click.option("--subscription", "subscription_id", help="Subscription ID for this run only")
@click.option("--role", "role_name", help="Role granted for the session")
@logging_options
@click.pass_context
def access(
    ctx: click.Context,
    vault_name: str | None,
    secret_names: tuple[str, ...],
    subscription_id: str | None,
    role_name: str | None,
    log_format: str | None,
    log_level: str | None,
) -> None:
    """Grant temporary access to a vault, read secrets, then revert everything."""
    config = load_config(
        subscription_id=subscription_id,
        role_name=role_name,
        log_format=log_format,
        log_level=log_level.upper() if log_level else None,
    )
    ctx.exit(
        runtime.run_access_session(config, vault_name=vault_name, secret_names=secret_names)
    )


@cli.command()
@logging_options
@click.pass_context
def subscription(ctx: click.Context, log_format: str | None, log_level: str | None) -> None:
    """Select the subscription to work in and remember it."""
    config = load_config(log_format=log_format, log_level=log_level.upper() if log_level else None)

    def action() -> int:
        control_plane = runtime.build_control_plane(config)
        choose_subscription(control_plane, state_store(config))
        return runtime.EXIT_OK

    ctx.exit(runtime.run_guarded(action))


# =============================================================================
# Cache Commands
# =============================================================================


@cli.group()
def cache() -> None:
    """Vault listing cache: refresh, show."""
    pass


@cache.command("refresh")
@logging_options
@click.pass_context
def cache_refresh(ctx: click.Context, log_format: str | None, log_level: str | None) -> None:
    """List the vaults of the current subscription into the cache."""
    config = load_config(log_format=log_format, log_level=log_level.upper() if log_level else None)

    def action() -> int:
        control_plane = runtime.build_control_plane(config)
        store = state_store(config)
        selection = resolve_subscription(
            control_plane, store, override=config.subscription_id, confirm=False
        )
        store.refresh_cache(control_plane, selection.subscription_id)
        return runtime.EXIT_OK

    ctx.exit(runtime.run_guarded(action))


@cache.command("show")
def cache_show() -> None:
    """Print the cached vault listing without calling Azure."""
    config = load_config()
    store = state_store(config)
    cached = store.load_cache()
    if cached is None:
        click.echo("No vault cache found. Run 'ztvo cache refresh'.")
        return

    status = "valid" if store.is_cache_valid(cached) else "stale"
    click.echo(f"Refreshed at: {cached.refreshed_at:%Y-%m-%d %H:%M:%S} ({status})")
    if cached.subscription_id:
        click.echo(f"Subscription: {cached.subscription_id}")
    for i, vault in enumerate(cached.vaults, start=1):
        click.echo(f"{i}. {vault.name} (RG: {vault.resource_group}, Location: {vault.location})")


# =============================================================================
# Info
# =============================================================================


@cli.command()
def info() -> None:
    """Show configuration, state file locations and cache age."""
    config = load_config()
    store = state_store(config)

    click.echo(f"State directory:   {config.state_dir}")
    click.echo(f"Config file:       {store.config_file}")
    click.echo(f"Cache file:        {store.cache_file}")
    click.echo(f"Role:              {config.role_name}")
    click.echo(
        f"Polling:           every {config.poll_interval_seconds}s, "
        f"timeout {config.poll_timeout_seconds}s"
    )
    click.echo(f"IP lookup:         {config.ip_lookup_url}")

    selection = store.load_subscription()
    if config.subscription_id:
        click.echo(f"Subscription:      {config.subscription_id} (from AZURE_SUBSCRIPTION_ID)")
    elif selection is not None:
        click.echo(f"Subscription:      {selection.subscription_name} ({selection.subscription_id})")
    else:
        click.echo("Subscription:      not configured")

    cached = store.load_cache()
    if cached is None:
        click.echo("Vault cache:       none")
    else:
        days = cached.age(store.now()).days
        status = "valid" if store.is_cache_valid(cached) else "stale"
        click.echo(f"Vault cache:       {len(cached.vaults)} vaults, {days} days old ({status})")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
