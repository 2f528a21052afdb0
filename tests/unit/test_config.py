"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from agentcoord.config import AgentCoordConfig, load_config
from agentcoord.persistence import (
    InMemoryStateStore,
    InMemoryWorkerHealthStore,
    SQLiteStateStore,
    get_health_store,
    get_state_store,
)
from agentcoord.transports import InMemoryTransport, get_transport
from agentcoord.transports.redis import RedisTransport


def test_defaults_without_config_file():
    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.monitoring.check_interval == 30000
    assert config.monitoring.heartbeat_timeout == 90000
    assert config.monitoring.max_recovery_attempts == 3
    assert config.monitoring.auto_recovery is True
    assert config.is_production is False


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
monitoring:
  checkInterval: 1000
  heartbeatTimeout: 5000
  autoRecovery: false
retryPolicies:
  slow:
    maxRetries: 1
    baseDelay: 0.5
circuitBreakers:
  llm:
    threshold: 2
    resetTimeout: 1000
delegations:
  content-writer: [content-writer-backup]
"""
    )
    monkeypatch.setenv("AGENTCOORD_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.monitoring.check_interval == 1000
    assert config.monitoring.heartbeat_timeout == 5000
    assert config.monitoring.auto_recovery is False
    assert config.retry_policies["slow"].max_retries == 1
    assert config.circuit_breakers["llm"].reset_timeout == 1000
    assert config.delegations == {"content-writer": ["content-writer-backup"]}


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("AGENTCOORD_DATABASE_URL", f"sqlite://{tmp_path / 'state.db'}")
    monkeypatch.setenv("AGENTCOORD_ENV", "production")
    config = load_config()
    assert config.database_url.endswith("state.db")
    assert config.is_production


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        AgentCoordConfig(transport={"backend": "carrier-pigeon"})
    with pytest.raises(ValidationError):
        AgentCoordConfig(retryPolicies={"bad": {"maxRetries": -1}})


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
    monkeypatch.setenv("AGENTCOORD_CONFIG", str(config_path))

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_transport_env_override(monkeypatch):
    monkeypatch.setenv("AGENTCOORD_TRANSPORT", "inmemory")
    assert isinstance(get_transport(config=AgentCoordConfig()), InMemoryTransport)
    with pytest.raises(ValueError):
        get_transport("smoke-signals")


def test_store_factories(tmp_path, monkeypatch):
    assert isinstance(get_state_store(), InMemoryStateStore)
    assert isinstance(get_health_store(), InMemoryWorkerHealthStore)

    db_path = tmp_path / "state.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite://{db_path}")
    store = get_state_store()
    assert isinstance(store, SQLiteStateStore)
    assert store.db_path == str(db_path)

    with pytest.raises(ValueError):
        get_state_store("mysql://nowhere")
