"""Entry points for the Zero Trust Vault Operator.

SECRETLESS ARCHITECTURE:
The operator acts only as the signed-in Azure CLI user. Service principal
secrets in the environment abort the run before any access is changed.

Exit codes:
    0   success, empty vault, or the user left a menu
    1   access blocked, operation failed, or invalid configuration
    2   secretless violation
    130 interrupted (SIGINT/SIGTERM or Ctrl-C at a prompt)
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

import click

from .azure_control_plane import AzureControlPlane
from .config import Config, ConfigurationError, LogFormat
from .control_plane import CloudControlPlane, ControlPlaneError
from .local_state import LocalStateError, LocalStateStore
from .log_levels import SUCCESS
from .security import SecretlessViolationError, get_operator_credential
from .selection import (
    InteractiveVaultSelector,
    SecretUnavailableError,
    SelectionAborted,
    interactive_secret_menu,
    resolve_named_vault,
    resolve_subscription,
    retrieve_named_secrets,
)
from .session import AccessBlockedError, SessionInterrupted, SessionOrchestrator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_SECURITY_VIOLATION = 2
EXIT_INTERRUPTED = 130

# LogRecord attributes that are not user supplied extras
RESERVED_RECORD_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
})

LEVEL_COLOURS: dict[int, str] = {
    logging.DEBUG: "white",
    logging.INFO: "blue",
    SUCCESS: "green",
    logging.WARNING: "yellow",
    logging.ERROR: "red",
    logging.CRITICAL: "red",
}


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human readable lines with a [LEVEL] prefix, coloured on a terminal."""

    def __init__(self, colour: bool = False) -> None:
        super().__init__()
        self._colour = colour

    def format(self, record: logging.LogRecord) -> str:
        label = f"[{record.levelname}]"
        if self._colour:
            label = click.style(label, fg=LEVEL_COLOURS.get(record.levelno, "white"))
        message = f"{label} {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logging(log_format: LogFormat = LogFormat.TEXT, level: str = "INFO") -> None:
    """Configure root logging on stderr, leaving stdout for secret values.

    Safe to call more than once; earlier handlers are replaced.
    """
    handler = logging.StreamHandler(sys.stderr)
    if log_format == LogFormat.JSON:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(ConsoleFormatter(colour=sys.stderr.isatty()))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_control_plane(config: Config) -> CloudControlPlane:
    """Create the Azure control plane for the signed-in user.

    Raises:
        SecretlessViolationError: If credential secrets are in the environment.
    """
    credential = get_operator_credential()
    return AzureControlPlane(
        credential, subscription_id=config.subscription_id, ip_lookup_url=config.ip_lookup_url
    )


def run_guarded(action: Callable[[], int | None]) -> int:
    """Run an action and translate its outcome into an exit code."""
    try:
        return action() or EXIT_OK

    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION

    except SelectionAborted as e:
        logger.info(f"Nothing to do: {e}")
        return EXIT_OK

    except (SessionInterrupted, KeyboardInterrupt, click.Abort) as e:
        logger.error(str(e) or "Interrupted")
        return EXIT_INTERRUPTED

    except AccessBlockedError as e:
        logger.error(str(e))
        return EXIT_FAILURE

    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    except (ControlPlaneError, LocalStateError, SecretUnavailableError) as e:
        logger.error(str(e), extra={"error_type": type(e).__name__})
        return EXIT_FAILURE

    except Exception as e:
        logger.exception("Operation failed unexpectedly", extra={"error": str(e)})
        return EXIT_FAILURE


def run_access_session(
    config: Config,
    *,
    vault_name: str | None = None,
    secret_names: Sequence[str] = (),
    control_plane: CloudControlPlane | None = None,
    store: LocalStateStore | None = None,
) -> int:
    """Run one complete access session.

    Args:
        config: Validated configuration.
        vault_name: Vault to open; the interactive menu is shown when None.
        secret_names: Secrets to print; the interactive menu is shown when empty.
        control_plane: Provider implementation (Azure by default).
        store: Local state store (from config by default).

    Returns:
        Process exit code.
    """

    def action() -> int:
        cp = control_plane or build_control_plane(config)
        state = store or LocalStateStore(config.state_dir, max_age_days=config.cache_max_age_days)

        subscription = resolve_subscription(
            cp, state, override=config.subscription_id, confirm=vault_name is None
        )

        if vault_name:
            selector = lambda plane: resolve_named_vault(plane, vault_name)  # noqa: E731
        else:
            selector = InteractiveVaultSelector(state, subscription)

        if secret_names:
            operation = lambda o: retrieve_named_secrets(o, secret_names)  # noqa: E731
        else:
            operation = interactive_secret_menu

        orchestrator = SessionOrchestrator(cp, config)
        orchestrator.run(selector, operation)
        logger.log(SUCCESS, "Operation completed successfully!")
        return EXIT_OK

    return run_guarded(action)


def run() -> None:
    """Entry point equivalent to 'ztvo access' with settings from the environment."""
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logger.error("Configuration error", extra={"error": str(e)})
        sys.exit(EXIT_FAILURE)

    setup_logging(config.log_format, config.log_level)
    sys.exit(run_access_session(config))


if __name__ == "__main__":
    run()
