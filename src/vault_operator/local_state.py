"""Persisted operator state: subscription selection and vault listing cache.

Both files live in the state directory (default ~/.ztvo):

    config.yaml        subscriptionId / subscriptionName
    vault_cache.json   vault listing of one subscription with refreshedAt

Nothing session related is persisted. A missing or unreadable file is
treated as absent, so the worst case is one extra prompt or listing call.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from .config import CACHE_FILE_NAME, CONFIG_FILE_NAME, DEFAULT_CACHE_MAX_AGE_DAYS
from .control_plane import CloudControlPlane
from .log_levels import SUCCESS
from .models import VaultSummary

logger = logging.getLogger(__name__)

# State files are tiny; anything larger is not ours
MAX_STATE_FILE_SIZE_BYTES = 1024 * 1024

STATE_DIR_MODE = 0o700


class LocalStateError(Exception):
    """Raised when local state cannot be written."""

    pass


class SubscriptionSelection(BaseModel):
    """The subscription the operator works in."""

    model_config = {"populate_by_name": True, "extra": "ignore"}

    subscription_id: str = Field(alias="subscriptionId", min_length=1)
    subscription_name: str = Field(alias="subscriptionName", min_length=1)


class CachedVault(BaseModel):
    """One vault in the listing cache."""

    model_config = {"populate_by_name": True, "extra": "ignore"}

    name: str
    resource_group: str = Field(alias="resourceGroup")
    location: str = ""
    resource_id: str = Field(alias="resourceId")

    @classmethod
    def from_summary(cls, summary: VaultSummary) -> CachedVault:
        return cls(
            name=summary.name,
            resource_group=summary.resource_group,
            location=summary.location,
            resource_id=summary.resource_id,
        )


class VaultCache(BaseModel):
    """Vault listing of one subscription."""

    model_config = {"populate_by_name": True, "extra": "ignore"}

    subscription_id: str | None = Field(None, alias="subscriptionId")
    refreshed_at: datetime = Field(alias="refreshedAt")
    vaults: list[CachedVault] = Field(default_factory=list)

    def age(self, now: datetime) -> timedelta:
        refreshed = self.refreshed_at
        if refreshed.tzinfo is None:
            refreshed = refreshed.replace(tzinfo=UTC)
        return now - refreshed

    def is_valid(
        self,
        now: datetime,
        max_age_days: int = DEFAULT_CACHE_MAX_AGE_DAYS,
        subscription_id: str | None = None,
    ) -> bool:
        """Check freshness and, when given, that the cache belongs to subscription_id."""
        if subscription_id and self.subscription_id and (
            subscription_id.lower() != self.subscription_id.lower()
        ):
            return False
        return self.age(now) <= timedelta(days=max_age_days)


class LocalStateStore:
    """Reads and writes the files in the operator state directory."""

    def __init__(
        self,
        state_dir: Path,
        *,
        max_age_days: int = DEFAULT_CACHE_MAX_AGE_DAYS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._state_dir = state_dir
        self._max_age_days = max_age_days
        self._clock = clock

    @property
    def config_file(self) -> Path:
        return self._state_dir / CONFIG_FILE_NAME

    @property
    def cache_file(self) -> Path:
        return self._state_dir / CACHE_FILE_NAME

    def now(self) -> datetime:
        return self._clock()

    # -------------------------------------------------------------------------
    # Subscription selection
    # -------------------------------------------------------------------------

    def load_subscription(self) -> SubscriptionSelection | None:
        """Return the persisted subscription, or None if there is none."""
        content = self._read(self.config_file)
        if content is None:
            return None

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            logger.warning(f"Ignoring unreadable {self.config_file}", extra={"error": str(e)})
            return None
        if not isinstance(data, dict):
            logger.warning(f"Ignoring {self.config_file}: not a YAML mapping")
            return None

        try:
            return SubscriptionSelection.model_validate(data)
        except ValidationError as e:
            logger.warning(
                f"Ignoring invalid {self.config_file}", extra={"error_count": e.error_count()}
            )
            return None

    def save_subscription(self, selection: SubscriptionSelection) -> None:
        """Persist the subscription selection.

        Raises:
            LocalStateError: If the file cannot be written.
        """
        content = yaml.safe_dump(selection.model_dump(by_alias=True), sort_keys=False)
        self._write(self.config_file, content)
        logger.log(
            SUCCESS, f"Subscription '{selection.subscription_name}' saved to configuration."
        )

    # -------------------------------------------------------------------------
    # Vault cache
    # -------------------------------------------------------------------------

    def load_cache(self) -> VaultCache | None:
        """Return the cached vault listing, or None if there is none."""
        content = self._read(self.cache_file)
        if content is None:
            return None
        try:
            return VaultCache.model_validate_json(content)
        except ValidationError as e:
            logger.warning(
                f"Ignoring invalid {self.cache_file}", extra={"error_count": e.error_count()}
            )
            return None

    def is_cache_valid(self, cache: VaultCache | None, subscription_id: str | None = None) -> bool:
        return cache is not None and cache.is_valid(self.now(), self._max_age_days, subscription_id)

    def refresh_cache(
        self, control_plane: CloudControlPlane, subscription_id: str | None = None
    ) -> VaultCache:
        """List the vaults of the active subscription and store them.

        Raises:
            ControlPlaneError: If the vaults cannot be listed.
            LocalStateError: If the cache cannot be written.
        """
        logger.info("Refreshing Key Vault cache...")
        vaults = sorted(control_plane.list_resources(), key=lambda v: v.name.lower())
        cache = VaultCache(
            subscription_id=subscription_id,
            refreshed_at=self.now(),
            vaults=[CachedVault.from_summary(v) for v in vaults],
        )
        self._write(self.cache_file, cache.model_dump_json(by_alias=True, indent=2))
        logger.log(SUCCESS, f"Cache updated with {len(cache.vaults)} vaults")
        return cache

    # -------------------------------------------------------------------------
    # File helpers
    # -------------------------------------------------------------------------

    def _read(self, path: Path) -> str | None:
        try:
            if not path.is_file():
                return None
            if path.stat().st_size > MAX_STATE_FILE_SIZE_BYTES:
                logger.warning(
                    f"Ignoring {path}: larger than {MAX_STATE_FILE_SIZE_BYTES} bytes",
                )
                return None
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Ignoring unreadable {path}", extra={"error": str(e)})
            return None


    def _write(self, path: Path, content: str) -> None:
        try:
            self._state_dir.mkdir(mode=STATE_DIR_MODE, parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_text(content, encoding="utf-8")
            tmp_path.replace(path)
        except OSError as e:
            raise LocalStateError(f"Cannot write {path}: {e}") from e
