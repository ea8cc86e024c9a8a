"""Tests for the interactive menus."""

from __future__ import annotations

from collections import deque
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import click
import pytest
from cloud_mock import DEFAULT_SUBSCRIPTION_ID, FakeControlPlane

from vault_operator.config import Config
from vault_operator.control_plane import ControlPlaneError, ResourceNotFoundError
from vault_operator.local_state import LocalStateStore, SubscriptionSelection, VaultCache
from vault_operator.models import SubscriptionInfo
from vault_operator.selection import (
    InteractiveVaultSelector,
    SecretUnavailableError,
    SelectionAborted,
    choose_from_list,
    interactive_secret_menu,
    resolve_subscription,
    retrieve_named_secrets,
)
from vault_operator.session import SessionOrchestrator

NOW = datetime(2024, 6, 1, tzinfo=UTC)
OTHER_SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000002"


class ScriptedInput:
    """Replays answers for click.prompt and click.confirm."""

    def __init__(self, prompts: list[str] | None = None, confirms: list[bool] | None = None) -> None:
        self.prompts = deque(prompts or [])
        self.confirms = deque(confirms or [])
        self.asked: list[str] = []

    def prompt(self, text: str, **_: Any) -> str:
        self.asked.append(text)
        return self.prompts.popleft()

    def confirm(self, text: str, **_: Any) -> bool:
        self.asked.append(text)
        return self.confirms.popleft()


@pytest.fixture
def scripted(monkeypatch: pytest.MonkeyPatch) -> ScriptedInput:
    answers = ScriptedInput()
    monkeypatch.setattr(click, "prompt", answers.prompt)
    monkeypatch.setattr(click, "confirm", answers.confirm)
    return answers


@pytest.fixture
def store(tmp_path: Path) -> LocalStateStore:
    return LocalStateStore(tmp_path, clock=lambda: NOW)


@pytest.fixture
def selection() -> SubscriptionSelection:
    return SubscriptionSelection(subscription_id=DEFAULT_SUBSCRIPTION_ID, subscription_name="Production")


class TestChooseFromList:
    """Tests for numbered list selection."""

    def test_valid_number(self, scripted: ScriptedInput) -> None:
        """Test that a 1-based number selects the item."""
        scripted.prompts.extend(["2"])

        assert choose_from_list(["a", "b", "c"], "item") == "b"

    def test_invalid_then_retry(self, scripted: ScriptedInput) -> None:
        """Test that an invalid entry re-prompts after a confirmed retry."""
        scripted.prompts.extend(["0", "x", "3"])
        scripted.confirms.extend([True, True])

        assert choose_from_list(["a", "b", "c"], "item") == "c"

    def test_declined_retry_aborts(self, scripted: ScriptedInput) -> None:
        """Test that declining a retry raises SelectionAborted."""
        scripted.prompts.extend(["9"])
        scripted.confirms.extend([False])

        with pytest.raises(SelectionAborted):
            choose_from_list(["a"], "item")


class TestResolveSubscription:
    """Tests for subscription resolution."""

    def test_confirmed_saved_selection(
        self, scripted: ScriptedInput, store: LocalStateStore, control_plane: FakeControlPlane,
        selection: SubscriptionSelection,
    ) -> None:
        """Test that a confirmed saved selection is activated without listing."""
        store.save_subscription(selection)
        scripted.confirms.extend([True])

        result = resolve_subscription(control_plane, store)

        assert result == selection
        assert control_plane.call_names() == ["use_subscription"]
        assert control_plane.active_subscription == DEFAULT_SUBSCRIPTION_ID

    def test_rejected_saved_selection_shows_menu(
        self, scripted: ScriptedInput, store: LocalStateStore, control_plane: FakeControlPlane,
        selection: SubscriptionSelection,
    ) -> None:
        """Test that rejecting the saved selection opens the menu and persists the new one."""
        control_plane.state.subscriptions.append(
            SubscriptionInfo(OTHER_SUBSCRIPTION_ID, "Staging", "Enabled")
        )
        store.save_subscription(selection)
        scripted.confirms.extend([False])
        scripted.prompts.extend(["2"])

        result = resolve_subscription(control_plane, store)

        assert result.subscription_name == "Staging"
        assert store.load_subscription() == result
        assert control_plane.active_subscription == OTHER_SUBSCRIPTION_ID

    def test_no_confirmation_when_disabled(
        self, scripted: ScriptedInput, store: LocalStateStore, control_plane: FakeControlPlane,
        selection: SubscriptionSelection,
    ) -> None:
        """Test that confirm=False uses the saved selection without asking."""
        store.save_subscription(selection)

        assert resolve_subscription(control_plane, store, confirm=False) == selection
        assert scripted.asked == []

    def test_override(
        self, scripted: ScriptedInput, store: LocalStateStore, control_plane: FakeControlPlane
    ) -> None:
        """Test that an explicit subscription is used for the run only."""
        result = resolve_subscription(control_plane, store, override=DEFAULT_SUBSCRIPTION_ID.upper())

        assert result.subscription_name == "Production"
        assert store.load_subscription() is None

    def test_unknown_override(
        self, scripted: ScriptedInput, store: LocalStateStore, control_plane: FakeControlPlane
    ) -> None:
        """Test that an override not visible to the caller is an error."""
        with pytest.raises(ResourceNotFoundError):
            resolve_subscription(control_plane, store, override=OTHER_SUBSCRIPTION_ID)

    def test_no_subscriptions(
        self, scripted: ScriptedInput, store: LocalStateStore, control_plane: FakeControlPlane
    ) -> None:
        """Test that an account without subscriptions is an error."""
        control_plane.state.subscriptions.clear()

        with pytest.raises(ResourceNotFoundError):
            resolve_subscription(control_plane, store)


class TestInteractiveVaultSelector:
    """Tests for the vault menu."""

    def test_enter_name(
        self, scripted: ScriptedInput, store: LocalStateStore, control_plane: FakeControlPlane,
        selection: SubscriptionSelection,
    ) -> None:
        """Test direct name entry, with a retry after an unknown name."""
        control_plane.state.add_vault("kv-prod")
        scripted.prompts.extend(["2", "", "kv-nope", "kv-prod"])
        scripted.confirms.extend([True])

        ref = InteractiveVaultSelector(store, selection)(control_plane)

        assert ref.name == "kv-prod"

    def test_list_refreshes_missing_cache(
        self, scripted: ScriptedInput, store: LocalStateStore, control_plane: FakeControlPlane,
        selection: SubscriptionSelection,
    ) -> None:
        """Test that listing without a cache refreshes it before selection."""
        control_plane.state.add_vault("kv-a")
        control_plane.state.add_vault("kv-b")
        scripted.prompts.extend(["1", "2"])

        ref = InteractiveVaultSelector(store, selection)(control_plane)

        assert ref.name == "kv-b"
        assert store.load_cache() is not None

    def test_fresh_cache_used_without_listing(
        self, scripted: ScriptedInput, store: LocalStateStore, control_plane: FakeControlPlane,
        selection: SubscriptionSelection,
    ) -> None:
        """Test that a valid cache is offered for reuse."""
        control_plane.state.add_vault("kv-a")
        store.refresh_cache(control_plane, DEFAULT_SUBSCRIPTION_ID)
        control_plane.calls.clear()
        scripted.prompts.extend(["1", "1"])
        scripted.confirms.extend([False])

        InteractiveVaultSelector(store, selection)(control_plane)

        assert "list_resources" not in control_plane.call_names()

    def test_stale_cache_refreshed(
        self, scripted: ScriptedInput, tmp_path: Path, control_plane: FakeControlPlane,
        selection: SubscriptionSelection,
    ) -> None:
        """Test that a cache older than its lifetime is refreshed without asking."""
        control_plane.state.add_vault("kv-a")
        old = LocalStateStore(tmp_path, clock=lambda: NOW - timedelta(days=31))
        old.refresh_cache(control_plane, DEFAULT_SUBSCRIPTION_ID)
        store = LocalStateStore(tmp_path, clock=lambda: NOW)
        control_plane.calls.clear()
        scripted.prompts.extend(["1", "1"])

        InteractiveVaultSelector(store, selection)(control_plane)

        assert control_plane.call_names().count("list_resources") == 1
        cache = store.load_cache()
        assert isinstance(cache, VaultCache)
        assert cache.refreshed_at == NOW

    def test_reconfigure_subscription(
        self, scripted: ScriptedInput, store: LocalStateStore, control_plane: FakeControlPlane,
        selection: SubscriptionSelection,
    ) -> None:
        """Test that option 3 switches subscription and returns to the menu."""
        control_plane.state.subscriptions.append(
            SubscriptionInfo(OTHER_SUBSCRIPTION_ID, "Staging", "Enabled")
        )
        control_plane.state.add_vault("kv-prod")
        scripted.prompts.extend(["3", "2", "2", "kv-prod"])
        selector = InteractiveVaultSelector(store, selection)

        selector(control_plane)

        assert selector.subscription.subscription_id == OTHER_SUBSCRIPTION_ID
        assert control_plane.active_subscription == OTHER_SUBSCRIPTION_ID

    def test_exit(
        self, scripted: ScriptedInput, store: LocalStateStore, control_plane: FakeControlPlane,
        selection: SubscriptionSelection,
    ) -> None:
        """Test that option 4 aborts, after an invalid choice is re-shown."""
        scripted.prompts.extend(["7", "4"])

        with pytest.raises(SelectionAborted):
            InteractiveVaultSelector(store, selection)(control_plane)


class TestSecretMenus:
    """Tests for secret retrieval inside a session."""

    @pytest.fixture
    def orchestrator(self, control_plane: FakeControlPlane, config: Config, sleep) -> SessionOrchestrator:
        control_plane.state.add_vault("kv-prod", secrets={"api-key": "k", "db-password": "p"})
        orchestrator = SessionOrchestrator(control_plane, config, sleep=sleep, progress=None)
        orchestrator.authenticate()
        orchestrator.select_resource(lambda cp: cp.resolve_resource("kv-prod"))
        return orchestrator

    def test_interactive_menu_prints_between_separators(
        self, scripted: ScriptedInput, orchestrator: SessionOrchestrator,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test choosing two secrets then stopping."""
        scripted.prompts.extend(["2", "1"])
        scripted.confirms.extend([True, False])

        assert interactive_secret_menu(orchestrator) == 2

        out = capsys.readouterr().out
        assert "-" * 40 + "\np\n" + "-" * 40 in out
        assert "-" * 40 + "\nk\n" + "-" * 40 in out

    def test_menu_waits_for_listing_access(
        self, scripted: ScriptedInput, orchestrator: SessionOrchestrator,
        control_plane: FakeControlPlane, sleep,
    ) -> None:
        """Test that a listing refused while the role propagates is retried, not fatal."""
        control_plane.fail(
            "list_secrets", ControlPlaneError("Forbidden: role not yet effective"), times=1
        )
        scripted.prompts.extend(["1"])
        scripted.confirms.extend([False])

        assert interactive_secret_menu(orchestrator) == 1
        assert control_plane.call_names().count("list_secrets") == 2
        assert sleep.calls == [5]

    def test_declined_retry_ends_menu(
        self, scripted: ScriptedInput, orchestrator: SessionOrchestrator
    ) -> None:
        """Test that declining a retry is not an error."""
        scripted.prompts.extend(["5"])
        scripted.confirms.extend([False])

        assert interactive_secret_menu(orchestrator) == 0

    def test_empty_vault(
        self, scripted: ScriptedInput, orchestrator: SessionOrchestrator,
        control_plane: FakeControlPlane,
    ) -> None:
        """Test that an empty vault ends without prompting."""
        control_plane.state.vaults["kv-prod"].secrets.clear()

        assert interactive_secret_menu(orchestrator) == 0
        assert scripted.asked == []

    def test_named_secrets(
        self, orchestrator: SessionOrchestrator, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test non-interactive retrieval of named secrets."""
        assert retrieve_named_secrets(orchestrator, ["db-password"]) == 1
        assert "p\n" in capsys.readouterr().out

    def test_missing_named_secret(self, orchestrator: SessionOrchestrator) -> None:
        """Test that an unreadable secret is reported after trying the rest."""
        with pytest.raises(SecretUnavailableError, match="nope"):
            retrieve_named_secrets(orchestrator, ["nope", "api-key"])
