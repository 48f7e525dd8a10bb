"""Tests for the command-line entry point."""

import pytest

from whatsapp_sessions.cli import build_parser, main


class TestParser:
    """Test argument parsing."""

    def test_serve_options(self):
        """Test serve takes host and port overrides."""
        args = build_parser().parse_args(["--config", "cfg.json", "serve", "--port", "9000"])

        assert args.command == "serve"
        assert args.config == "cfg.json"
        assert args.port == 9000
        assert args.host is None

    def test_pair_number(self):
        """Test pair takes the number positionally."""
        args = build_parser().parse_args(["pair", "+1 555 123 0000"])

        assert args.command == "pair"
        assert args.number == "+1 555 123 0000"

    def test_command_required(self):
        """Test a subcommand must be given."""
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


def test_missing_config_file(capsys):
    """Test a missing config file exits with an error."""
    assert main(["--config", "/nonexistent/config.json", "serve"]) == 1
    assert "Config file not found" in capsys.readouterr().err
