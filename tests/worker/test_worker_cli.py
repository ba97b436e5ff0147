"""Tests for the worker CLI."""

from unittest.mock import AsyncMock, Mock, patch

import pytest
import structlog
from typer.testing import CliRunner

from agentfleet.worker import __version__
from agentfleet.worker.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


def fake_worker() -> Mock:
    worker = Mock()
    worker.reconciler.reconcile = AsyncMock(return_value=True)
    worker.reconciler.cleanup_orphan_containers = AsyncMock(return_value=["openclaw-dead"])
    return worker


class TestCLI:
    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert f"AgentFleet worker version: {__version__}" in result.stdout

    def test_help(self) -> None:
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        for command in ("run", "reconcile-once", "cleanup-orphans", "install-triggers"):
            assert command in result.stdout

    def test_reconcile_once(self) -> None:
        worker = fake_worker()
        shutdown = AsyncMock()

        with (
            patch("agentfleet.worker.main.build_worker", AsyncMock(return_value=worker)),
            patch("agentfleet.worker.main.shutdown_worker", shutdown),
        ):
            result = runner.invoke(app, ["reconcile-once"])

        assert result.exit_code == 0
        assert "Reconciliation pass completed" in result.stdout
        worker.reconciler.reconcile.assert_awaited_once()
        shutdown.assert_awaited_once_with(worker)

    def test_cleanup_orphans(self) -> None:
        worker = fake_worker()

        with (
            patch("agentfleet.worker.main.build_worker", AsyncMock(return_value=worker)),
            patch("agentfleet.worker.main.shutdown_worker", AsyncMock()),
        ):
            result = runner.invoke(app, ["cleanup-orphans"])

        assert result.exit_code == 0
        assert "Removed 1 orphan container(s)" in result.stdout
        assert "openclaw-dead" in result.stdout

    def test_install_triggers(self) -> None:
        with patch("agentfleet.worker.cli.ChangeFeed") as feed_class:
            feed_class.return_value.install_triggers = AsyncMock()
            result = runner.invoke(app, ["install-triggers"])

        assert result.exit_code == 0
        feed_class.return_value.install_triggers.assert_awaited_once()
