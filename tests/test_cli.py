"""Test suite for the feedsync CLI."""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from conftest import ormatek_feed, price_item
from feedsync.cli import app
from feedsync.config import reload_config
from feedsync.repositories.sqlite import SqliteDatabase, SqliteOutboxRepository

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, env_clean):
    """Point the CLI at a temp database and a one-channel dry-run setup."""
    channels_file = tmp_path / "channels.json"
    channels_file.write_text(
        json.dumps([{"id": 1, "name": "shop-a", "driver": "log"}]), encoding="utf-8"
    )
    db_path = tmp_path / "feedsync.db"
    monkeypatch.setenv("DB_PATH", str(db_path))
    monkeypatch.setenv("CHANNELS_FILE", str(channels_file))
    reload_config()
    yield db_path
    monkeypatch.delenv("DB_PATH")
    monkeypatch.delenv("CHANNELS_FILE")
    reload_config()


@pytest.fixture
def feed_file(write_feed) -> Path:
    return write_feed(
        ormatek_feed(
            price_item(model="One", code="ONE-160"),
            price_item(model="One", code="ONE-180", width=180),
            price_item(model="Two", code="TWO-160", price=0),
            price_item(model="Three", code="THREE-160", price=250),
        )
    )


def outbox_stats(db_path: Path) -> dict:
    db = SqliteDatabase(str(db_path))
    try:
        return SqliteOutboxRepository(db).stats()
    finally:
        db.close()


def test_cli_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "feedsync version 0.1.0" in result.output


def test_cli_parse_summary(feed_file, env_clean):
    result = runner.invoke(app, ["parse", str(feed_file)])
    assert result.exit_code == 0
    assert "Ormatek::One" in result.output
    assert "Parsed 2 product(s)" in result.output
    assert "1 skipped" in result.output


def test_cli_parse_json_lines(feed_file, env_clean):
    result = runner.invoke(app, ["parse", str(feed_file), "--json", "--limit", "1"])
    assert result.exit_code == 0
    lines = [line for line in result.output.splitlines() if line.startswith("{")]
    assert len(lines) == 1
    product = json.loads(lines[0])
    assert product["name"] == "One"
    assert [v["sku"] for v in product["variants"]] == ["ONE-160", "ONE-180"]


def test_cli_parse_unknown_supplier(feed_file, env_clean):
    result = runner.invoke(app, ["parse", str(feed_file), "--supplier", "acme"])
    assert result.exit_code == 1
    assert "No parser registered" in result.output


def test_cli_parse_invalid_file():
    result = runner.invoke(app, ["parse", "nonexistent.xml"])
    assert result.exit_code != 0
    assert "does not exist" in result.output.lower()


def test_cli_import_then_drain(cli_env, feed_file):
    result = runner.invoke(app, ["import", str(feed_file), "--supplier-id", "1"])
    assert result.exit_code == 0, result.output
    assert "Import finished" in result.output
    assert outbox_stats(cli_env)["pending"] == 2

    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "shop-a" in result.output

    result = runner.invoke(app, ["drain"])
    assert result.exit_code == 0, result.output
    stats = outbox_stats(cli_env)
    assert stats["pending"] == 0
    assert stats["success"] == 2


def test_cli_reimport_queues_nothing(cli_env, feed_file):
    runner.invoke(app, ["import", str(feed_file), "--supplier-id", "1", "--supplier", "ormatek"])
    runner.invoke(app, ["drain"])

    result = runner.invoke(app, ["import", str(feed_file), "--supplier-id", "1"])

    assert result.exit_code == 0
    assert outbox_stats(cli_env) == {
        "pending": 0,
        "processing": 0,
        "success": 2,
        "error": 0,
        "failed": 0,
    }


def test_cli_import_requires_supplier_id(cli_env, feed_file):
    result = runner.invoke(app, ["import", str(feed_file)])
    assert result.exit_code == 2


def test_cli_maintenance_commands(cli_env):
    result = runner.invoke(app, ["errors"])
    assert result.exit_code == 0
    assert "No failed records" in result.output

    result = runner.invoke(app, ["retry-failed"])
    assert result.exit_code == 0
    assert "0 record(s) re-queued" in result.output

    result = runner.invoke(app, ["reset-stuck", "--stale-sec", "60"])
    assert result.exit_code == 0
    assert "0 stuck record(s) reset" in result.output


def test_cli_channels_and_ping(cli_env):
    result = runner.invoke(app, ["channels"])
    assert result.exit_code == 0
    assert "shop-a" in result.output
    assert "Drivers: log, storefront" in result.output

    result = runner.invoke(app, ["ping"])
    assert result.exit_code == 0
    assert "shop-a (log)" in result.output

    result = runner.invoke(app, ["ping", "--channel", "9"])
    assert result.exit_code == 1


def test_cli_bad_channels_file(tmp_path, monkeypatch, env_clean):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "x.db"))
    monkeypatch.setenv("CHANNELS_FILE", str(tmp_path / "missing.json"))
    reload_config()
    try:
        result = runner.invoke(app, ["status"])
    finally:
        monkeypatch.delenv("CHANNELS_FILE")
        reload_config()

    assert result.exit_code == 1
    assert "Configuration error" in result.output
