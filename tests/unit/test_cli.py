"""Tests for the command line interface."""

import pytest
import yaml
from pathlib import Path
from tempfile import TemporaryDirectory

from click.testing import CliRunner

from costgate.cli.main import cli
from costgate.core.models import SpendTotal
from costgate.core.scopes import BudgetScope, BudgetWindow, ScopeKind
from costgate.pipeline.thresholds import ThresholdEvaluator
from costgate.storage.database import DatabaseManager
from costgate.storage.ledger import BudgetLedger


@pytest.fixture
def config_file():
    """Config file pointing at a temporary database."""
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.yaml"
        path.write_text(yaml.safe_dump({
            "database_path": str(Path(tmpdir) / "cli.db"),
            "token_estimation_mode": "heuristic",
            "enforcement_timeout_ms": 5000,
            "log_level": "WARNING",
        }))
        yield str(path)


def _run(config_file, *args):
    return CliRunner().invoke(cli, ["--config", config_file, *args])


def test_version():
    """Test the version option."""
    result = CliRunner().invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_set_limit_and_status(config_file):
    """Test setting a limit and reading it back."""
    result = _run(config_file, "budget", "set-limit", "project:search", "daily", "10")

    assert result.exit_code == 0
    assert "daily limit set" in result.output

    result = _run(config_file, "budget", "status", "project:search")

    assert result.exit_code == 0
    assert "daily" in result.output
    assert "$10.00000" in result.output


def test_set_limit_rejects_bad_scope(config_file):
    """Test malformed scopes exit with an error."""
    result = _run(config_file, "budget", "set-limit", "search", "daily", "10")

    assert result.exit_code == 1


def test_check_allows_and_denies(config_file):
    """Test the pre-flight check exit codes."""
    args = ["budget", "check", "--project", "search", "-m", "gpt-4o",
            "--input-units", "1000000", "--max-output-units", "100000"]

    allowed = _run(config_file, *args)
    assert allowed.exit_code == 0
    assert "Allowed" in allowed.output

    _run(config_file, "budget", "set-limit", "project:search", "daily", "3")
    denied = _run(config_file, *args)
    assert denied.exit_code == 1
    assert "Denied" in denied.output


def test_check_requires_a_scope(config_file):
    """Test check without any scope option fails."""
    result = _run(config_file, "budget", "check", "-m", "gpt-4o")

    assert result.exit_code == 1


def test_load_budget_file(config_file):
    """Test loading scopes and limits from YAML."""
    budgets = Path(config_file).parent / "budgets.yaml"
    budgets.write_text(yaml.safe_dump({
        "scopes": [
            {"kind": "organization", "id": "acme", "limits": {"monthly": 100}},
            {"kind": "project", "id": "search", "parent": "organization:acme",
             "limits": {"daily": 5}},
        ]
    }))

    result = _run(config_file, "budget", "load", str(budgets))

    assert result.exit_code == 0
    assert "organization:acme" in result.output
    assert "project:search" in result.output


def test_load_invalid_budget_file(config_file):
    """Test an invalid budget file is reported."""
    budgets = Path(config_file).parent / "bad.yaml"
    budgets.write_text(yaml.safe_dump({"scopes": [{"kind": "project", "id": "x", "parent": "organization:y"}]}))

    result = _run(config_file, "budget", "load", str(budgets))

    assert result.exit_code == 1


def test_set_alerts(config_file):
    """Test configuring alert thresholds."""
    result = _run(config_file, "budget", "set-alerts", "project:search", "--warning", "60", "--critical", "80")

    assert result.exit_code == 0
    assert "warning 60%" in result.output

    invalid = _run(config_file, "budget", "set-alerts", "project:search", "--warning", "90", "--critical", "80")
    assert invalid.exit_code == 1


def test_pricing_add_and_resolve(config_file):
    """Test a stored price is picked up by the resolver."""
    result = _run(
        config_file, "pricing", "add", "openai", "gpt-4o",
        "--input", "1.5", "--output", "6", "--unit", "1m_tokens", "--effective-date", "2025-01-01",
    )
    assert result.exit_code == 0
    assert "Stored openai/gpt-4o" in result.output

    resolved = _run(config_file, "pricing", "resolve", "openai", "gpt-4o")
    assert resolved.exit_code == 0
    assert "dynamic" in resolved.output
    assert "1.5" in resolved.output


def test_pricing_resolve_fallback(config_file):
    """Test unknown models resolve to the fallback tier."""
    result = _run(config_file, "pricing", "resolve", "nobody", "mystery-model")

    assert result.exit_code == 0
    assert "fallback" in result.output


def test_pricing_list(config_file):
    """Test listing static prices."""
    result = _run(config_file, "pricing", "list", "-p", "openai")

    assert result.exit_code == 0
    assert "Model Pricing" in result.output


def test_report_without_usage(config_file):
    """Test the report on an empty ledger."""
    result = _run(config_file, "report")

    assert result.exit_code == 0
    assert "No usage recorded" in result.output


def test_alerts_without_history(config_file):
    """Test the alert listing on an empty ledger."""
    result = _run(config_file, "alerts")

    assert result.exit_code == 0
    assert "No alerts sent" in result.output


def test_alerts_lists_sent_alerts(config_file):
    """Test alerts recorded by the evaluator are listed with totals."""
    db = DatabaseManager(str(Path(config_file).parent / "cli.db"))
    db.init_db()
    ledger = BudgetLedger(db)
    project = BudgetScope(ScopeKind.PROJECT, "search")
    ledger.set_limit(project, BudgetWindow.DAILY, 10.0)
    ThresholdEvaluator(ledger).evaluate_total(
        SpendTotal(project, BudgetWindow.DAILY, "2025-01-15", 8.0), request_id="req-1"
    )
    db.dispose()

    result = _run(config_file, "alerts", "--scope", "project:search")

    assert result.exit_code == 0
    assert "Budget Alerts (showing 1)" in result.output
    assert "warning 1, critical 0, exceeded 0" in result.output

    assert "No alerts sent" in _run(config_file, "alerts", "-w", "monthly").output


def test_dead_letters_without_entries(config_file):
    """Test the dead-letter listing on an empty ledger."""
    result = _run(config_file, "dead-letters")

    assert result.exit_code == 0
    assert "No dead letters" in result.output


def test_retire(config_file):
    """Test retiring stale buckets on an empty ledger."""
    result = _run(config_file, "budget", "retire")

    assert result.exit_code == 0
    assert "Retired 0" in result.output
