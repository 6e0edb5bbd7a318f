"""
Tests for the CLI interface.
"""
import os
import tempfile

import pytest
import yaml
from typer.testing import CliRunner

from model_gate.cli.main import app, EXIT_CODE_FAIL, EXIT_CODE_PASS, EXIT_CODE_PENDING
from model_gate.storage.models import Disposition
from model_gate.storage.repository import SqliteApprovalStore

runner = CliRunner()

POLICY = {
    "thresholds": {"per_run_approval": 0.5},
    "model_policy": {
        "fallback_order": ["gpt-codex"],
        "blocked_models": {"gpt-5": {"blocked_until": "2999-01-01T00:00:00Z", "reason": "freeze"}},
    },
}


@pytest.fixture
def workspace():
    """Temporary database and policy file."""
    with tempfile.TemporaryDirectory() as temp_dir:
        db_path = os.path.join(temp_dir, "gate.db")
        config_path = os.path.join(temp_dir, "policy.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(POLICY, f)
        yield db_path, config_path


def check(workspace, *args):
    db_path, config_path = workspace
    return runner.invoke(app, ["check", "--db", db_path, "--config", config_path, "--agent", "bot", *args])


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_help_hint(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Model Gate" in result.output

    def test_init(self, workspace):
        db_path, _ = workspace
        result = runner.invoke(app, ["init", "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(db_path)

    def test_check_allowed(self, workspace):
        result = check(workspace, "--model", "gpt-codex", "--prompt", "hello")
        assert result.exit_code == EXIT_CODE_PASS
        assert "ALLOWED" in result.output

    def test_check_blocked_model(self, workspace):
        result = check(workspace, "--model", "gpt-5", "--prompt", "hello")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "REJECTED" in result.output
        assert "Suggested fallback: gpt-codex" in result.output

    def test_check_unpriced_model(self, workspace):
        result = check(workspace, "--model", "mystery", "--prompt", "hello")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "unpriced_model" in result.output

    def test_check_bad_config(self, workspace):
        db_path, _ = workspace
        result = runner.invoke(app, [
            "check", "--db", db_path, "--config", "missing.yaml",
            "--agent", "bot", "--model", "gpt-codex"
        ])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Policy file not found" in result.output

    def test_pending_then_approve(self, workspace):
        db_path, _ = workspace
        result = check(workspace, "--model", "gpt-4.1", "--prompt", "hello", "--max-output", "10000")
        assert result.exit_code == EXIT_CODE_PENDING
        assert "PENDING APPROVAL" in result.output

        listing = runner.invoke(app, ["approvals", "--db", db_path])
        assert listing.exit_code == EXIT_CODE_PASS
        assert "Pending approvals" in listing.output

        pending = SqliteApprovalStore(db_path).list(Disposition.PENDING)
        assert len(pending) == 1
        approval_id = pending[0].id

        approved = runner.invoke(app, ["approve", approval_id, "--reviewer", "alice", "--db", db_path])
        assert approved.exit_code == EXIT_CODE_PASS
        assert "approved by alice" in approved.output

        again = runner.invoke(app, ["reject", approval_id, "--reviewer", "bob", "--db", db_path])
        assert again.exit_code == EXIT_CODE_FAIL
        assert "already" in again.output

        usage = runner.invoke(app, ["usage", "--db", db_path])
        assert usage.exit_code == EXIT_CODE_PASS
        assert "Total: $1.5" in usage.output

    def test_approve_unknown_id(self, workspace):
        db_path, _ = workspace
        result = runner.invoke(app, ["approve", "apr_nope", "--reviewer", "alice", "--db", db_path])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Approval not found" in result.output

    def test_approvals_invalid_status(self, workspace):
        db_path, _ = workspace
        result = runner.invoke(app, ["approvals", "--status", "maybe", "--db", db_path])
        assert result.exit_code == EXIT_CODE_FAIL

    def test_approvals_unreadable_database(self, workspace):
        db_path, _ = workspace
        missing = os.path.join(os.path.dirname(db_path), "missing", "gate.db")
        result = runner.invoke(app, ["approvals", "--db", missing])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)

    def test_usage_empty(self, workspace):
        db_path, _ = workspace
        result = runner.invoke(app, ["usage", "--db", db_path, "--period", "2020-01"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage recorded" in result.output

    def test_override_models(self, workspace):
        _, config_path = workspace
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump({**POLICY, "agents": [{"id": "writer", "model": "gpt-5"}]}, f)

        result = runner.invoke(app, ["override-models", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Backup written to" in result.output
        with open(config_path, encoding='utf-8') as f:
            assert yaml.safe_load(f)["agents"][0]["model"] == "gpt-codex"

        again = runner.invoke(app, ["override-models", config_path])
        assert again.exit_code == EXIT_CODE_PASS
        assert "No changes required" in again.output
