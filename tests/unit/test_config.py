"""Tests for configuration loading."""

import pytest

from aiflow.config import load_config
from aiflow.persistence import (
    InMemoryFlowRepository,
    SQLiteFlowRepository,
    get_repository,
    reset_repository,
)
from aiflow.transports import get_transport
from aiflow.transports.inmemory import InMemoryTransport
from aiflow.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  queue: crm.flows
  redis:
    host: testhost
    port: 1234
job:
  max_attempts: 5
  timeout: 30
flow:
  max_retries: 1
"""
    )
    monkeypatch.setenv("AIFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.queue == "crm.flows"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.job.max_attempts == 5
    assert config.job.timeout == 30
    assert config.job.backoff == 5.0
    assert config.flow.max_retries == 1


def test_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.setenv("AIFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("AIFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.job.max_attempts == 3
    assert config.job.timeout == 120
    assert config.job.continue_delay == 1.0
    assert config.job.finalize_delay == 0.5
    assert config.database_url is None


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
    poll_interval: 0.5
    visibility_timeout: 300
"""
    )
    monkeypatch.setenv("AIFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("AIFLOW_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380
    assert transport.poll_interval == 0.5
    assert transport.visibility_timeout == 300

    monkeypatch.setenv("AIFLOW_TRANSPORT", "inmemory")
    assert isinstance(get_transport(), InMemoryTransport)

    with pytest.raises(ValueError):
        get_transport("carrier-pigeon")


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.setenv("AIFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("AIFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    repo = get_repository()
    assert isinstance(repo, InMemoryFlowRepository)
    assert get_repository() is repo

    reset_repository()
    monkeypatch.setenv("AIFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'flows.db'}")
    assert isinstance(get_repository(), SQLiteFlowRepository)

    with pytest.raises(ValueError):
        get_repository("mysql://nope")
