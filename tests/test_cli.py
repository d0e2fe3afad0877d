"""Tests for the command-line interface."""

from pathlib import Path

import pytest
from typer.testing import CliRunner

from repo_compliance_analyzer.cli import app
from repo_compliance_analyzer.storage.database import Database

from .conftest import ORG_ID

runner = CliRunner()


@pytest.fixture
def cli_db(tmp_path: Path) -> Path:
    return tmp_path / "cli.db"


def _register(snapshot_tree: Path, cli_db: Path) -> str:
    result = runner.invoke(app, ["register", str(snapshot_tree), "--org", ORG_ID, "--db", str(cli_db)])
    assert result.exit_code == 0, result.output
    assert "Registered snapshot" in result.output
    return Database(cli_db).list_snapshots(ORG_ID)[0].id


class TestCLI:
    """Test CLI commands end to end against a temporary database."""

    def test_version(self):
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert "Repository Compliance Analyzer v" in result.output

    def test_register_rejects_missing_directory(self, tmp_path: Path, cli_db: Path):
        result = runner.invoke(app, ["register", str(tmp_path / "nope"), "--org", ORG_ID, "--db", str(cli_db)])

        assert result.exit_code == 1
        assert "INVALID_SNAPSHOT_PATH" in result.output

    def test_analyze_then_inspect(self, snapshot_tree: Path, cli_db: Path):
        snapshot_id = _register(snapshot_tree, cli_db)

        result = runner.invoke(
            app,
            ["analyze", snapshot_id, "--org", ORG_ID, "-f", "ISO27001", "--db", str(cli_db)],
        )
        assert result.exit_code == 0, result.output
        assert "completed" in result.output

        result = runner.invoke(app, ["summary", snapshot_id, "--org", ORG_ID, "--db", str(cli_db)])
        assert result.exit_code == 0
        assert "Findings Summary" in result.output

        result = runner.invoke(app, ["findings", snapshot_id, "--org", ORG_ID, "-s", "fail", "--db", str(cli_db)])
        assert result.exit_code == 0
        assert "A.9.2.4" in result.output

        result = runner.invoke(app, ["tasks", snapshot_id, "--org", ORG_ID, "--db", str(cli_db)])
        assert result.exit_code == 0
        assert "critical" in result.output

    def test_analyze_completed_snapshot_again(self, snapshot_tree: Path, cli_db: Path):
        snapshot_id = _register(snapshot_tree, cli_db)
        args = ["analyze", snapshot_id, "--org", ORG_ID, "--db", str(cli_db)]

        assert runner.invoke(app, args).exit_code == 0
        result = runner.invoke(app, args)

        assert result.exit_code == 1
        assert "SNAPSHOT_NOT_READY" in result.output

    def test_reconcile_with_nothing_stale(self, cli_db: Path):
        result = runner.invoke(app, ["reconcile", "--db", str(cli_db)])

        assert result.exit_code == 0
        assert "No stale analysis runs" in result.output

    def test_init_config(self, tmp_path: Path):
        path = tmp_path / "config.yaml"

        result = runner.invoke(app, ["init-config", "--path", str(path)])

        assert result.exit_code == 0
        assert "default_frameworks" in path.read_text()
