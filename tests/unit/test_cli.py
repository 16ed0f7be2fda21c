"""Tests for the command-line interface."""

from typer.testing import CliRunner

from meterly import __version__
from meterly.cli.main import app

runner = CliRunner()


class TestCli:
    """Tests for CLI commands."""

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_config_from_yaml(self, tmp_path):
        path = tmp_path / "meterly.yaml"
        path.write_text("ingestion:\n  max_batch_size: 25\n")

        result = runner.invoke(app, ["config", "--config", str(path)])

        assert result.exit_code == 0
        assert "25" in result.output

    def test_queue(self):
        result = runner.invoke(app, ["queue"])
        assert result.exit_code == 0
        assert "check-progressive-billing" in result.output

    def test_worker_once(self):
        result = runner.invoke(app, ["worker", "--once"])
        assert result.exit_code == 0
        assert "Delivered 0 job(s)" in result.output
