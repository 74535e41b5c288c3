"""Tests for configuration loading and validation."""

import pytest
from pydantic import ValidationError

from agentflow.config import (
    AppConfig,
    LogLevel,
    get_config,
    get_testing_config,
    reset_config,
    validate_config,
)


@pytest.fixture(autouse=True)
def clean_config():
    reset_config()
    yield
    reset_config()


class TestEnvironmentLoading:
    """AppConfig.from_env."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("AGENTFLOW_AGENT_URL", raising=False)
        monkeypatch.delenv("AGENTFLOW_PORT", raising=False)

        config = AppConfig.from_env()

        assert config.port == 8000
        assert config.agent_url is None
        assert config.default_node_timeout is None
        assert config.max_node_visits == 1000
        assert config.chat_rewrite_queries is False

    def test_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("AGENTFLOW_PORT", "9001")
        monkeypatch.setenv("AGENTFLOW_AGENT_URL", "http://agent.local/messages")
        monkeypatch.setenv("AGENTFLOW_DEFAULT_NODE_TIMEOUT", "12.5")
        monkeypatch.setenv("AGENTFLOW_DEFAULT_MAX_RETRIES", "3")
        monkeypatch.setenv("AGENTFLOW_DEBUG", "yes")
        monkeypatch.setenv("AGENTFLOW_LOG_LEVEL", "debug")
        monkeypatch.setenv("AGENTFLOW_CORS_ORIGINS", "http://a.test, http://b.test")
        monkeypatch.setenv("AGENTFLOW_CHAT_REWRITE_QUERIES", "on")

        config = AppConfig.from_env()

        assert config.port == 9001
        assert config.agent_url == "http://agent.local/messages"
        assert config.default_node_timeout == 12.5
        assert config.default_max_retries == 3
        assert config.debug is True
        assert config.log_level == LogLevel.DEBUG
        assert config.cors_origins == ["http://a.test", "http://b.test"]
        assert config.chat_rewrite_queries is True

    def test_empty_variable_uses_default(self, monkeypatch):
        monkeypatch.setenv("AGENTFLOW_PORT", "")

        assert AppConfig.from_env().port == 8000

    def test_global_config_is_cached(self, monkeypatch):
        monkeypatch.setenv("AGENTFLOW_PORT", "8100")

        first = get_config()
        monkeypatch.setenv("AGENTFLOW_PORT", "8200")

        assert get_config() is first
        assert first.port == 8100


class TestValidation:
    """Field validators and validate_config."""

    @pytest.mark.parametrize("field, value", [
        ("port", 0),
        ("port", 70000),
        ("max_node_visits", 0),
        ("default_node_timeout", 0),
        ("default_max_retries", -1),
    ])
    def test_rejects_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            AppConfig(**{field: value})

    def test_rejects_non_http_agent_url(self):
        with pytest.raises(ValueError, match="Agent URL must be http or https"):
            validate_config(AppConfig(agent_url="ftp://agent.local"))

    def test_accepts_valid_config(self):
        validate_config(AppConfig(agent_url="https://agent.local/messages"))

    def test_uvicorn_config(self):
        config = AppConfig(host="127.0.0.1", port=9000, log_level=LogLevel.WARNING)

        assert config.get_uvicorn_config() == {
            "host": "127.0.0.1",
            "port": 9000,
            "reload": False,
            "log_level": "warning",
            "access_log": False,
        }

    def test_testing_config(self):
        config = get_testing_config()

        assert config.default_node_timeout == 5.0
        assert config.default_max_retries == 0
        assert config.enable_performance_monitoring is False
