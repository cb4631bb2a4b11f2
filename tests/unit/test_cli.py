"""
Tests for the command-line interface.
"""

import json
import logging

import pytest
import yaml
from click.testing import CliRunner

from streamzure import __version__
from streamzure.cli import cli


@pytest.fixture(autouse=True)
def restore_root_logger(monkeypatch):
    """Undo the logging setup each invocation performs."""
    import os
    for key in list(os.environ):
        if key.startswith("STREAMZURE_"):
            monkeypatch.delenv(key)
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    yield
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)


@pytest.fixture
def runner():
    return CliRunner()


class TestCLI:
    """Test suite for the CLI."""

    def test_version(self, runner):
        """Test the version option."""
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_show_defaults(self, runner):
        """Test showing the default configuration."""
        result = runner.invoke(cli, ["config", "show"])
        assert result.exit_code == 0

        data = json.loads(result.output)
        assert data["transfer"]["location_mode"] == "primary_only"
        assert data["retry"]["policy"] == "exponential"

    def test_show_with_file(self, runner, tmp_path):
        """Test showing a configuration file merged over defaults."""
        config_file = tmp_path / "transfer.yaml"
        config_file.write_text(yaml.dump({"retry": {"max_attempts": 9}}))

        result = runner.invoke(cli, ["config", "show", "--config", str(config_file)])
        assert result.exit_code == 0
        assert json.loads(result.output)["retry"]["max_attempts"] == 9

    def test_show_invalid_env(self, runner, monkeypatch):
        """Test an invalid environment value is reported."""
        monkeypatch.setenv("STREAMZURE_LOG_FORMAT", "xml")
        result = runner.invoke(cli, ["config", "show"])
        assert result.exit_code == 1

    def test_validate_valid(self, runner, tmp_path):
        """Test validating a good file."""
        config_file = tmp_path / "transfer.yaml"
        config_file.write_text(yaml.dump({"transfer": {"use_transactional_md5": True}}))

        result = runner.invoke(cli, ["config", "validate", str(config_file)])
        assert result.exit_code == 0
        assert "[OK]" in result.output

    def test_validate_invalid(self, runner, tmp_path):
        """Test validating a bad file."""
        config_file = tmp_path / "transfer.yaml"
        config_file.write_text(yaml.dump({"transfer": {"stream_write_size_in_bytes": 10}}))

        result = runner.invoke(cli, ["config", "validate", str(config_file)])
        assert result.exit_code == 1

    def test_validate_missing_file(self, runner):
        """Test a missing file is a usage error."""
        result = runner.invoke(cli, ["config", "validate", "/nonexistent.yaml"])
        assert result.exit_code == 2
