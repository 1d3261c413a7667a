import json
import logging
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from circulation.main import app
from circulation.ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")


@pytest.fixture
def cli(db_file):
    """Invoke the CLI against a seeded per-test store."""
    def invoke(*args):
        return runner.invoke(app, ["--db", db_file, *args])

    result = invoke("seed")
    assert result.exit_code == 0, result.stdout
    return invoke


def test_seed(cli):
    result = cli("history")
    assert result.exit_code == 0
    assert "No loans found." in result.stdout


def test_seeding_twice_reports_conflict(cli):
    result = cli("seed")
    assert result.exit_code == 1
    assert "Error (conflict):" in result.stdout


def test_checkout_and_return(cli):
    result = cli("checkout", "1", "--barcode", "BC1001")
    assert result.exit_code == 0
    assert "Loan created" in result.stdout
    assert "patron_id: 1" in result.stdout

    result = cli("checkout", "2", "--barcode", "BC1001")
    assert result.exit_code == 1
    assert "Error (conflict): Copy BC1001 is currently on_loan" in result.stdout

    result = cli("return", "--barcode", "BC1001")
    assert result.exit_code == 0
    assert "Loan closed" in result.stdout
    assert "fine: \n" in result.stdout


def test_suspended_patron(cli):
    result = cli("checkout", "3", "--barcode", "BC1003")
    assert result.exit_code == 1
    assert "Error (forbidden): Patron is suspended until" in result.stdout
    assert "Unpaid fines" in result.stdout


def test_rejections_are_logged(cli, caplog):
    with caplog.at_level(logging.INFO, logger="circulation.main"):
        result = cli("checkout", "3", "--barcode", "BC1003")
    assert result.exit_code == 1
    assert any(
        record.levelno == logging.INFO and "rejected: forbidden" in record.getMessage() for record in caplog.records
    )


def test_not_for_loan(cli):
    result = cli("checkout", "1", "--barcode", "BC1004")
    assert result.exit_code == 1
    assert "not for loan" in result.stdout


def test_renew(cli):
    cli("checkout", "1", "--barcode", "BC1002")
    result = cli("renew", "1")
    assert result.exit_code == 0
    assert "Loan renewed" in result.stdout
    assert "renewal_count: 1" in result.stdout


def test_holds_commands(cli):
    result = cli("hold", "2", "1")
    assert result.exit_code == 0
    assert "Hold placed" in result.stdout
    assert "priority: 1" in result.stdout

    result = cli("holds", "--active")
    assert "patron_id=2 work_id=1" in result.stdout

    result = cli("--as-patron", "1", "cancel-hold", "1")
    assert result.exit_code == 1
    assert "Error (forbidden)" in result.stdout

    result = cli("cancel-hold", "1")
    assert result.exit_code == 0
    assert "status: cancelled" in result.stdout

    result = cli("expire-holds")
    assert result.exit_code == 0
    assert "Expired 0 hold(s)." in result.stdout


def test_json_output(cli):
    cli("checkout", "1", "--barcode", "BC1001")
    cli("checkout", "2", "--barcode", "BC1003")
    result = cli("-o", "json", "history")
    assert result.exit_code == 0
    loans = json.loads(result.stdout.strip().splitlines()[-1])
    assert {loan["patron_id"] for loan in loans} == {1, 2}


def test_accounts_commands(cli):
    result = cli("fines", "1")
    assert result.exit_code == 0
    assert "No account entries." in result.stdout

    result = cli("--as-patron", "2", "fines", "1")
    assert result.exit_code == 1
    assert "Error (forbidden)" in result.stdout

    result = cli("pay", "1", "abc")
    assert result.exit_code == 1
    assert "Error (invalid_input)" in result.stdout

    result = cli("pay", "1", "1.00")
    assert result.exit_code == 1
    assert "Error (not_found)" in result.stdout

    result = cli("summary", "1")
    assert result.exit_code == 0
    assert "outstanding: 0.00" in result.stdout


def test_preferences_commands(cli):
    result = cli("set-preference", "fine_per_day", "0.50")
    assert result.exit_code == 0
    assert "effective_value: 0.50" in result.stdout

    result = cli("preferences")
    assert "variable=fine_per_day value=0.50" in result.stdout

    result = cli("set-preference", "nope", "1")
    assert result.exit_code == 1
    assert "Error (not_found)" in result.stdout


@patch("subprocess.run")
def test_serve_command(mock_run):
    result = runner.invoke(app, ["serve", "--port", "8123"])
    assert result.exit_code == 0
    assert "Starting API on http://" in result.stdout
    args = mock_run.call_args[0][0]
    assert "circulation.api:app" in args
    assert "8123" in args
