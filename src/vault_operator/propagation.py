"""Bounded polling for eventually consistent changes.

Azure accepts a firewall or RBAC change long before the Key Vault data
plane enforces it. PropagationPoller repeats a cheap probe at a fixed
interval until it succeeds or the time budget is spent. A timeout is
reported, never raised: callers decide whether it matters.
"""

from __future__ import annotations

import logging
import math
import sys
import time
from collections.abc import Callable

import click

from .config import DEFAULT_POLL_INTERVAL_SECONDS, DEFAULT_POLL_TIMEOUT_SECONDS
from .models import PollResult

logger = logging.getLogger(__name__)

PROGRESS_BAR_WIDTH = 50

Probe = Callable[[], bool]
ProgressCallback = Callable[[float, float], None]


def render_progress_bar(fraction: float, next_check_seconds: float) -> str:
    """Render a fixed-width progress bar line.

    Args:
        fraction: Elapsed share of the timeout, clamped to [0, 1].
        next_check_seconds: Seconds until the next probe.
    """
    fraction = min(max(fraction, 0.0), 1.0)
    percent = int(fraction * 100)
    done = percent // 2
    bar = "#" * done + " " * (PROGRESS_BAR_WIDTH - done)
    return f"\r[{bar}] {percent:3d}% | next check in {int(next_check_seconds):2d}s"


def console_progress(fraction: float, next_check_seconds: float) -> None:
    """Draw the progress bar on stderr when it is a terminal."""
    if not sys.stderr.isatty():
        return
    click.echo(render_progress_bar(fraction, next_check_seconds), nl=False, err=True)


class PropagationPoller:
    """Repeats a probe until it succeeds or a timeout elapses.

    Elapsed time advances by the interval after each failed probe, so with
    an always-failing probe the probe runs exactly ceil(timeout / interval)
    times regardless of how long each probe call itself takes.
    """

    def __init__(
        self,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS,
        *,
        sleep: Callable[[float], None] = time.sleep,
        progress: ProgressCallback | None = console_progress,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if timeout < 0:
            raise ValueError("timeout must not be negative")
        self._interval = interval
        self._timeout = timeout
        self._sleep = sleep
        self._progress = progress

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def timeout(self) -> float:
        return self._timeout

    def max_attempts(self, interval: float | None = None, timeout: float | None = None) -> int:
        """Number of probe calls before a timeout."""
        interval = self._interval if interval is None else interval
        timeout = self._timeout if timeout is None else timeout
        return max(1, math.ceil(timeout / interval))

    def poll(
        self,
        probe: Probe,
        *,
        interval: float | None = None,
        timeout: float | None = None,
        description: str = "propagation",
    ) -> PollResult:
        """Call probe until it returns True or the timeout is reached.

        A probe that raises counts as a negative result; polling continues.

        Args:
            probe: Zero-argument callable returning True once the change is visible.
            interval: Seconds between probes (defaults to the poller's interval).
            timeout: Total budget in seconds (defaults to the poller's timeout).
            description: Label used in log lines.

        Returns:
            PollResult.SUCCEEDED or PollResult.TIMED_OUT.
        """
        interval = self._interval if interval is None else interval
        timeout = self._timeout if timeout is None else timeout
        if interval <= 0:
            raise ValueError("interval must be positive")

        logger.info(
            f"Waiting for {description} (polling every {interval:g}s, timeout {timeout:g}s)..."
        )

        elapsed = 0.0
        attempts = 0
        while True:
            attempts += 1
            if self._run_probe(probe, description, attempts):
                self._finish_progress()
                logger.debug(
                    "Probe succeeded",
                    extra={"description": description, "attempts": attempts, "elapsed": elapsed},
                )
                return PollResult.SUCCEEDED

            if self._progress is not None:
                self._progress(elapsed / timeout if timeout else 1.0, interval)

            if elapsed + interval >= timeout:
                break

            self._sleep(interval)
            elapsed += interval

        self._finish_progress()
        logger.debug(
            "Probe timed out",
            extra={"description": description, "attempts": attempts, "timeout": timeout},
        )
        return PollResult.TIMED_OUT

    @staticmethod
    def _run_probe(probe: Probe, description: str, attempt: int) -> bool:
        try:
            return bool(probe())
        except Exception as e:
            logger.debug(
                f"Probe for {description} failed: {e}",
                extra={"attempt": attempt, "error_type": type(e).__name__},
            )
            return False

    def _finish_progress(self) -> None:
        if self._progress is console_progress and sys.stderr.isatty():
            click.echo("", err=True)
