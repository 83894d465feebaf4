"""
Tests for the effects CLI.
"""

from contextlib import contextmanager

import pytest
from typer.testing import CliRunner

from effects_core.cli import main as cli

runner = CliRunner()


@pytest.fixture
def cli_repo(repo, monkeypatch):
    """Point the CLI at the in-memory repository."""

    @contextmanager
    def session():
        yield repo

    monkeypatch.setattr(cli, "repository_session", session)
    return repo


class TestCli:
    """Tests for CLI commands."""

    def test_handlers_lists_types_and_aliases(self):
        result = runner.invoke(cli.app, ["handlers"])

        assert result.exit_code == 0
        assert "notification.email" in result.output
        assert "integration.webhook" in result.output
        assert "integration.sync" in result.output

    def test_process_event_rejects_bad_uuid(self, cli_repo):
        result = runner.invoke(cli.app, ["process-event", "not-a-uuid"])

        assert result.exit_code == 1
        assert "Invalid event ID" in result.output

    def test_process_event(self, cli_repo, make_event):
        cli_repo.add_rule("absence.approved", "notification.in_app", target_resolution_rule={"type": "actor"})
        event = make_event("absence.approved")

        result = runner.invoke(cli.app, ["process-event", str(event.id)])

        assert result.exit_code == 0
        assert "effectsProcessed: 1" in result.output

    def test_process_event_not_found(self, cli_repo):
        result = runner.invoke(cli.app, ["process-event", "12345678-1234-1234-1234-000000000000"])

        assert result.exit_code == 1
        assert "Event not found" in result.output

    def test_process_batch(self, cli_repo, make_event):
        make_event("absence.approved")

        result = runner.invoke(cli.app, ["process-batch", "--batch-size", "5"])

        assert result.exit_code == 0
        assert "processed: 1" in result.output

    def test_retry_failed_nothing_due(self, cli_repo):
        result = runner.invoke(cli.app, ["retry-failed"])

        assert result.exit_code == 0
        assert "retried: 0" in result.output

    def test_recover_stale_nothing_stuck(self, cli_repo):
        result = runner.invoke(cli.app, ["recover-stale", "--stale-after-seconds", "60"])

        assert result.exit_code == 0
        assert "recovered: 0" in result.output

    def test_dead_letters_empty(self, cli_repo):
        result = runner.invoke(cli.app, ["dead-letters"])

        assert result.exit_code == 0
        assert "No dead letters" in result.output

    def test_dead_letters_rejects_bad_tenant(self, cli_repo):
        result = runner.invoke(cli.app, ["dead-letters", "--tenant-id", "nope"])

        assert result.exit_code == 1
