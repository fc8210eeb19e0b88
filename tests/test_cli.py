"""
Tests for the rxpurge command-line interface.
"""

import json
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from sqlalchemy import inspect

from rx_purge.cli import cli
from rx_purge.schema import OrderHistory


@pytest.fixture
def runner():
    """Create a CLI runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging():
    """Leave logging handlers alone while commands run."""
    with patch("rx_purge.cli.configure_logging"):
        yield


@pytest.fixture
def db_url(db_engine):
    return str(db_engine.url)


def invoke(runner, db_url, *args):
    return runner.invoke(cli, ["--database-url", db_url, *args])


class TestCLIBasics:
    """Test basic CLI functionality."""

    def test_cli_no_command_shows_banner(self, runner):
        result = runner.invoke(cli, [])
        assert result.exit_code == 0
        assert "Rx History Purge" in result.output

    def test_cli_help(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("purge", "drive", "backlog", "nightly", "init-db", "config"):
            assert command in result.output

    def test_cli_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "1.0.0" in result.output

    def test_init_db(self, runner, tmp_path):
        url = f"sqlite:///{tmp_path / 'fresh.db'}"

        result = runner.invoke(cli, ["--database-url", url, "init-db"])

        assert result.exit_code == 0
        from sqlalchemy import create_engine

        tables = inspect(create_engine(url)).get_table_names()
        assert "oe_order_history" in tables
        assert "sql_event_log" in tables

    def test_bad_config_file(self, runner, tmp_path):
        path = tmp_path / "purge.json"
        path.write_text(json.dumps({"block_size": 0}))

        result = runner.invoke(cli, ["--config-file", str(path), "config", "show"])

        assert result.exit_code == 1
        assert "Error loading configuration" in result.output


class TestPurgeCommands:
    """Test purge and drive."""

    def test_purge(self, runner, db_url, seed):
        seed.history_rx(1, datetime.now() - timedelta(days=400))
        seed.history_rx(2, datetime.now() - timedelta(days=1))

        result = invoke(runner, db_url, "purge", "--older-than-days", "30", "--block-size", "10")

        assert result.exit_code == 0, result.output
        assert "History Rxs deleted" in result.output
        assert seed.count(OrderHistory) == 1

    def test_purge_partial_window_fails(self, runner, db_url):
        result = invoke(runner, db_url, "purge", "--from", "2020-01-01")

        assert result.exit_code == 1
        assert "51004" in result.output

    def test_drive(self, runner, db_url, seed):
        seed.spread_history(10, datetime(2020, 1, 1), datetime(2020, 1, 10))

        result = invoke(
            runner, db_url, "drive", "--from", "2020-01-01", "--to", "2020-01-15", "--chunk-days", "5"
        )

        assert result.exit_code == 0, result.output
        assert "State: done" in result.output
        assert seed.count(OrderHistory) == 0

    def test_drive_inverted_range(self, runner, db_url):
        result = invoke(runner, db_url, "drive", "--from", "2020-02-01", "--to", "2020-01-01")

        assert result.exit_code == 1
        assert "51001" in result.output


class TestReports:
    """Test backlog, nightly and config output."""

    def test_backlog_csv(self, runner, db_url, seed):
        seed.history_rx(1, datetime(2021, 5, 3), with_dependents=False)
        seed.history_rx(2, datetime(2021, 5, 9), with_dependents=False)

        result = invoke(runner, db_url, "backlog", "--older-than-days", "30", "--format", "csv")

        assert result.exit_code == 0, result.output
        lines = result.output.strip().splitlines()
        assert lines[0] == "period,history_rows,accept_reject_rows"
        assert lines[1] == "2021-05,2,0"

    def test_backlog_json(self, runner, db_url, seed):
        seed.history_rx(1, datetime(2021, 5, 3), with_dependents=False)

        result = invoke(runner, db_url, "backlog", "--older-than-days", "30", "--format", "json")

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["history_rows"] == 1

    def test_nightly(self, runner, db_url):
        result = invoke(runner, db_url, "nightly")

        assert result.exit_code == 0, result.output
        assert "Outcome: Succeeded" in result.output

    def test_config_show_json(self, runner, db_url):
        result = invoke(runner, db_url, "config", "show", "--format", "json")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["database_url"] == db_url
        assert data["block_size"] == 100000

    def test_config_show_table(self, runner, db_url):
        result = invoke(runner, db_url, "config", "show")

        assert result.exit_code == 0
        assert "max_execs_per_chunk" in result.output
