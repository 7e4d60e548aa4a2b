"""Tests for the mailsync CLI commands."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from mailsync.cli import cli
from mailsync.orchestrator.report import ConnectionReport, ConnectionStatus, SyncReport
from mailsync.storage.connections import Connection, ConnectionSource
from mailsync.storage.cursor import CursorTracker
from mailsync.storage.database import Database


@pytest.fixture
def runner():
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def env(tmp_path: Path) -> dict:
    return {
        "MAILSYNC_CONFIG": None,
        "MAILSYNC_DATABASE_URL": f"sqlite:///{tmp_path / 'state.db'}",
        "MAILSYNC_CONTENT_STORE_URL": str(tmp_path / "content"),
        "MAILSYNC_LEASE_DIR": str(tmp_path / "leases"),
        "MAILSYNC_LOG_LEVEL": "ERROR",
        "COLUMNS": "200",
    }


def _mock_engine(*statuses: ConnectionStatus) -> MagicMock:
    report = SyncReport(
        started_at=datetime.now(timezone.utc),
        finished_at=datetime.now(timezone.utc),
        connections=[
            ConnectionReport(connection_id=f"acct{i}", status=status, fetched=2, stored=2)
            for i, status in enumerate(statuses)
        ],
    )
    engine = MagicMock()
    engine.run_sync_pass = AsyncMock(return_value=report)
    return engine


# ============================================================================
# run
# ============================================================================


def test_run_without_settings_exits_with_error(runner):
    result = runner.invoke(
        cli,
        ["run"],
        env={"MAILSYNC_CONFIG": None, "MAILSYNC_DATABASE_URL": None, "MAILSYNC_CONTENT_STORE_URL": None},
    )

    assert result.exit_code == 1
    assert "Configuration error" in result.output


def test_run_with_no_connections(runner, env, tmp_path):
    result = runner.invoke(cli, ["run"], env=env)

    assert result.exit_code == 0
    assert "Sync pass" in result.output
    assert (tmp_path / "state.db").exists()


def test_run_prints_json_report(runner, env):
    engine = _mock_engine(ConnectionStatus.SUCCEEDED, ConnectionStatus.SKIPPED)

    with patch("mailsync.cli.sync.SyncEngine.from_settings", return_value=engine):
        result = runner.invoke(cli, ["run", "--json"], env=env)

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert [c["status"] for c in payload["connections"]] == ["succeeded", "skipped"]
    engine.close.assert_called_once()


def test_run_exits_nonzero_on_failed_connection(runner, env):
    engine = _mock_engine(ConnectionStatus.SUCCEEDED, ConnectionStatus.FAILED)

    with patch("mailsync.cli.sync.SyncEngine.from_settings", return_value=engine):
        result = runner.invoke(cli, ["run"], env=env)

    assert result.exit_code == 1
    assert "failed" in result.output


def test_run_with_yaml_config(runner, env, tmp_path):
    config = tmp_path / "mailsync.yaml"
    config.write_text(
        f"database_url: sqlite:///{tmp_path / 'from-yaml.db'}\n"
        f"content_store_url: {tmp_path / 'content'}\n"
    )
    env = {**env, "MAILSYNC_DATABASE_URL": None}

    result = runner.invoke(cli, ["run", "--config", str(config)], env=env)

    assert result.exit_code == 0
    assert (tmp_path / "from-yaml.db").exists()


# ============================================================================
# serve
# ============================================================================


def test_serve_uses_interval_override(runner, env):
    engine = _mock_engine()

    with patch("mailsync.cli.sync.SyncEngine.from_settings", return_value=engine), patch(
        "mailsync.cli.sync._serve", new_callable=AsyncMock
    ) as serve_loop:
        result = runner.invoke(cli, ["serve", "--interval", "15"], env=env)

    assert result.exit_code == 0
    serve_loop.assert_awaited_once_with(engine, 15)
    engine.close.assert_called_once()


# ============================================================================
# status
# ============================================================================


def test_status_lists_connections_with_cursors(runner, env, tmp_path):
    db = Database(tmp_path / "state.db")
    ConnectionSource(db).save(
        Connection(
            id="acct1",
            owner_id="owner",
            host="imap.example.com",
            username="a@example.com",
            auth_ref="env:PW",
        )
    )
    CursorTracker(db).reset_cursor("acct1", 7)
    CursorTracker(db).advance_cursor("acct1", 12, 7)
    db.close()

    result = runner.invoke(cli, ["status"], env=env)

    assert result.exit_code == 0
    assert "acct1" in result.output
    assert "12" in result.output


def test_status_without_connections(runner, env):
    result = runner.invoke(cli, ["status"], env=env)

    assert result.exit_code == 0
    assert "No enabled connections" in result.output


def test_run_with_unusable_lease_dir_exits_with_error(runner, env, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    env = {**env, "MAILSYNC_LEASE_DIR": str(blocker / "leases")}

    result = runner.invoke(cli, ["run"], env=env)

    assert result.exit_code == 1
    assert "Startup failed" in result.output
    assert "lease directory" in result.output


def test_status_uses_configured_default_mailbox(runner, env, tmp_path):
    db = Database(tmp_path / "state.db")
    db.execute(
        "INSERT INTO mail_connections(id, owner_id, provider_kind, host, username, auth_ref) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        ("acct1", "owner", "imap", "imap.example.com", "a@example.com", "env:PW"),
    )
    db.close()

    result = runner.invoke(cli, ["status"], env={**env, "MAILSYNC_MAILBOX": "Archive"})

    assert result.exit_code == 0
    assert "Archive" in result.output
