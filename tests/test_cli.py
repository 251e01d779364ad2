"""Tests for CLI commands over the local store and a faked remote."""

from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeRefresher, FakeRemote
from typer.testing import CliRunner

from mailbox_sync.cli.app import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MBX_STORAGE__ROOT_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("MBX_LOGGING__JSON_LOGS", "true")
    monkeypatch.delenv("MBX_GOOGLE__CLIENT_ID", raising=False)
    monkeypatch.delenv("MBX_GOOGLE__CLIENT_SECRET", raising=False)


def test_add_account_then_list_and_stats() -> None:
    """Registered accounts should show up in the listing and have empty stats."""
    added = runner.invoke(
        app,
        [
            "add-account",
            "--email",
            "Someone@Example.com",
            "--user-id",
            "4",
            "--access-token",
            "tok",
            "--refresh-token",
            "ref",
            "--expires-in",
            "3600",
        ],
    )
    assert added.exit_code == 0, added.output
    assert "someone@example.com" in added.output

    listed = runner.invoke(app, ["accounts"])
    assert listed.exit_code == 0, listed.output
    assert "someone@example.com" in listed.output

    stats = runner.invoke(app, ["stats", "--account-id", "1"])
    assert stats.exit_code == 0, stats.output
    assert "unread" in stats.output


def test_sync_without_google_settings_exits_with_code_2() -> None:
    """Commands that need the remote API fail fast on missing configuration."""
    result = runner.invoke(app, ["sync", "--account-id", "1"])
    assert result.exit_code == 2


def test_run_while_disabled_exits_with_code_2() -> None:
    """The foreground scheduler refuses to start when disabled."""
    result = runner.invoke(app, ["run"])
    assert result.exit_code == 2


def test_stats_for_unknown_account() -> None:
    """Unknown account ids are reported as errors."""
    result = runner.invoke(app, ["stats", "--account-id", "42"])
    assert result.exit_code == 1


@pytest.fixture
def remote(monkeypatch: pytest.MonkeyPatch) -> FakeRemote:
    """Configure Google settings and route the runtime to an in-memory remote."""
    fake = FakeRemote([f"id-{i:03d}" for i in range(3)], rejected_tokens=["stale"])
    monkeypatch.setenv("MBX_GOOGLE__CLIENT_ID", "client")
    monkeypatch.setenv("MBX_GOOGLE__CLIENT_SECRET", "secret")
    monkeypatch.setattr(
        "mailbox_sync.sync.runtime.gmail_client_factory",
        lambda *, user_id: fake.factory,
    )
    monkeypatch.setattr(
        "mailbox_sync.sync.runtime.GoogleTokenRefresher",
        lambda *, settings: FakeRefresher(),
    )
    return fake


def _add_stale_account() -> None:
    result = runner.invoke(
        app,
        [
            "add-account",
            "--email",
            "a@example.com",
            "--user-id",
            "1",
            "--access-token",
            "stale",
            "--refresh-token",
            "ref",
            "--expires-in",
            "3600",
        ],
    )
    assert result.exit_code == 0, result.output


def test_count_refreshes_a_rejected_token(remote: FakeRemote) -> None:
    """count should refresh once on an unauthorized response and then succeed."""
    _add_stale_account()

    result = runner.invoke(app, ["count", "--account-id", "1"])

    assert result.exit_code == 0, result.output
    assert "3" in result.output.splitlines()
    assert remote.tokens_seen == ["stale", "fresh-1"]


def test_page_refreshes_a_rejected_token(remote: FakeRemote) -> None:
    """page should use the same single refresh as count."""
    _add_stale_account()

    result = runner.invoke(app, ["page", "--account-id", "1", "--page-size", "2"])

    assert result.exit_code == 0, result.output
    assert "id-000" in result.output
    assert remote.tokens_seen == ["stale", "fresh-1"]


def test_backfill_command_runs_one_pass(remote: FakeRemote) -> None:
    """backfill should fetch history for the registered account and report completion."""
    _add_stale_account()

    result = runner.invoke(app, ["backfill"])

    assert result.exit_code == 0, result.output
    assert "complete" in result.output

    listed = runner.invoke(app, ["accounts"])
    assert "done" in listed.output
