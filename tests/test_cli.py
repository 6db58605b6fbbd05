"""Tests for the scheduled-run CLI."""
import pytest
from click.testing import CliRunner

from screening_match.cli import cli
from screening_match.config.settings import get_settings


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("EXTERNAL_DATABASE_URL", "")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_init_db_then_run(cli_env):
    runner = CliRunner()

    init = runner.invoke(cli, ["init-db"])
    assert init.exit_code == 0, init.output

    run = runner.invoke(cli, ["run-matching", "--batch-size", "10", "--sequential"])
    assert run.exit_code == 0, run.output
    assert '"success": true' in run.output
    assert '"execution_ref": "EXEC_' in run.output


def test_out_of_range_option_rejected(cli_env):
    result = CliRunner().invoke(cli, ["run-matching", "--batch-size", "500"])

    assert result.exit_code == 2
