"""Tests for configuration loading in relaygate.compose."""

import pytest

from relaygate.compose import _rate_limits, load_gateway_config
from relaygate.gateway.admission import DEFAULT_RATE_LIMITS, RateLimitPolicy

ENV_KEYS = (
    "RELAYGATE_CONFIG",
    "RELAYGATE_HOST",
    "RELAYGATE_PORT",
    "RELAYGATE_UPSTREAM_URL",
    "RELAYGATE_DEFAULT_MODEL",
    "RELAYGATE_ADMIN_TOKEN",
    "RELAYGATE_DEBUG_DIR",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "relaygate.yaml"
    path.write_text(
        "port: 7000\n"
        "host: 0.0.0.0\n"
        "admin_token: from-file\n"
        "read_timeout: 30\n"
        "retry_attempts: 5\n"
        "rate_limits:\n"
        "  chat:\n"
        "    max_requests: 10\n"
        "    window: 30\n"
    )
    return path


class TestLoadGatewayConfig:
    """Priority: argument > environment > file > default."""

    async def test_defaults(self):
        config = await load_gateway_config()
        assert config.port == 8080
        assert config.host == "127.0.0.1"
        assert config.admin_token is None
        assert config.rate_limits == DEFAULT_RATE_LIMITS

    async def test_file_values(self, config_file):
        config = await load_gateway_config(config_file=str(config_file))
        assert config.port == 7000
        assert config.host == "0.0.0.0"
        assert config.admin_token == "from-file"
        assert config.read_timeout == 30.0
        assert isinstance(config.read_timeout, float)
        assert config.retry_attempts == 5
        assert config.rate_limits["chat"] == RateLimitPolicy(10, 30.0)
        assert config.rate_limits["embeddings"] == DEFAULT_RATE_LIMITS["embeddings"]

    async def test_config_path_from_environment(self, config_file, monkeypatch):
        monkeypatch.setenv("RELAYGATE_CONFIG", str(config_file))
        config = await load_gateway_config()
        assert config.port == 7000

    async def test_environment_beats_file(self, config_file, monkeypatch):
        monkeypatch.setenv("RELAYGATE_PORT", "7500")
        monkeypatch.setenv("RELAYGATE_ADMIN_TOKEN", "from-env")
        config = await load_gateway_config(config_file=str(config_file))
        assert config.port == 7500
        assert config.admin_token == "from-env"

    async def test_argument_beats_environment(self, config_file, monkeypatch):
        monkeypatch.setenv("RELAYGATE_PORT", "7500")
        config = await load_gateway_config(port=9000, config_file=str(config_file))
        assert config.port == 9000
        assert config.host == "0.0.0.0"

    async def test_missing_file_uses_defaults(self, tmp_path, caplog):
        config = await load_gateway_config(config_file=str(tmp_path / "absent.yaml"))
        assert config.port == 8080
        assert "Config file not found" in caplog.text

    async def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="must contain a mapping"):
            await load_gateway_config(config_file=str(path))


class TestRateLimits:
    def test_parse(self):
        assert _rate_limits({"chat": {"max_requests": "5"}}) == {
            "chat": RateLimitPolicy(5, 60.0)
        }

    def test_empty(self):
        assert _rate_limits(None) is None
        assert _rate_limits({}) is None

    def test_not_a_mapping(self):
        with pytest.raises(ValueError):
            _rate_limits(["chat"])
