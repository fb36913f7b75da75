"""Tests for the relaygate CLI."""

import importlib

import pytest
from click.testing import CliRunner

cli_main = importlib.import_module("relaygate.frontends.cli.main")


@pytest.fixture
def calls(monkeypatch):
    """Record create_gateway and configure_logging calls instead of serving."""
    recorded = {}

    async def fake_create_gateway(**kwargs):
        recorded["gateway"] = kwargs

    def fake_configure_logging(**kwargs):
        recorded["logging"] = kwargs

    monkeypatch.setattr(cli_main, "create_gateway", fake_create_gateway)
    monkeypatch.setattr(cli_main, "configure_logging", fake_configure_logging)
    return recorded


class TestServeCommand:
    """The serve command wiring."""

    def test_help(self):
        result = CliRunner().invoke(cli_main.cli, ["serve", "--help"])
        assert result.exit_code == 0
        assert "--upstream-url" in result.output
        assert "--admin-token" in result.output

    def test_options_forwarded(self, calls):
        result = CliRunner().invoke(
            cli_main.cli,
            [
                "serve",
                "--host",
                "0.0.0.0",
                "--port",
                "9000",
                "--upstream-url",
                "https://upstream.test",
                "--admin-token",
                "secret",
                "--log-level",
                "debug",
                "--log-format",
                "json",
            ],
        )

        assert result.exit_code == 0, result.output
        assert calls["gateway"] == {
            "host": "0.0.0.0",
            "port": 9000,
            "upstream_url": "https://upstream.test",
            "admin_token": "secret",
            "debug_dir": None,
            "config_file": None,
        }
        assert calls["logging"] == {"level": "DEBUG", "format": "json"}

    def test_defaults_left_to_compose(self, calls):
        result = CliRunner().invoke(cli_main.cli, ["serve"])
        assert result.exit_code == 0
        assert set(calls["gateway"].values()) == {None}

    def test_startup_error_exits_nonzero(self, monkeypatch):
        async def failing_create_gateway(**kwargs):
            raise OSError("address already in use")

        monkeypatch.setattr(cli_main, "create_gateway", failing_create_gateway)
        monkeypatch.setattr(cli_main, "configure_logging", lambda **kwargs: None)

        result = CliRunner().invoke(cli_main.cli, ["serve"])

        assert result.exit_code == 1
        assert "address already in use" in result.output

    def test_invalid_port(self, calls):
        result = CliRunner().invoke(cli_main.cli, ["serve", "--port", "eighty"])
        assert result.exit_code == 2
        assert "gateway" not in calls
