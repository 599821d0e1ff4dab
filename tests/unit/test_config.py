"""Tests for configuration loading."""

from opscrew.config import load_config
from opscrew.transports import get_transport
from opscrew.transports.redis import RedisTransport


def test_defaults_without_config_file():
    config = load_config()
    assert config.transport.backend == "none"
    assert config.database_url is None
    assert config.completion.model == "gpt-4"
    assert config.audit.retention_days == 90
    assert config.log_level == "info"


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
rate_limiting:
  default_max_requests: 5
approval:
  default_timeout_ms: 1000
log_level: debug
"""
    )
    monkeypatch.setenv("OPSCREW_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.rate_limiting.default_max_requests == 5
    assert config.approval.default_timeout_ms == 1000
    assert config.log_level == "debug"


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("OPSCREW_DATABASE_URL", f"sqlite://{tmp_path / 'state.db'}")
    monkeypatch.setenv("OPSCREW_MODEL", "gpt-4o-mini")
    config = load_config()
    assert config.database_url.startswith("sqlite://")
    assert config.completion.model == "gpt-4o-mini"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("OPSCREW_CONFIG", str(config_path))

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380
