"""Tests for engine settings."""
import pytest

from resgraph import ConfigError, EngineConfig, MemoryStateStore, FileStateStore, open_store


def _clear(monkeypatch):
    for env in EngineConfig._ENV.values():
        monkeypatch.delenv(env, raising=False)


def test_defaults(monkeypatch):
    _clear(monkeypatch)
    config = EngineConfig.from_env()
    assert config.concurrency == 8
    assert config.state_backend == "file"
    assert config.state_path == ".resgraph/state.json"
    assert config.max_retries == 0
    assert config.default_timeout is None
    assert config.refresh is False


def test_environment_and_overrides(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("RESGRAPH_CONCURRENCY", "4")
    monkeypatch.setenv("RESGRAPH_TIMEOUT", "2.5")
    monkeypatch.setenv("RESGRAPH_REFRESH", "yes")
    monkeypatch.setenv("RESGRAPH_LOG_LEVEL", "debug")

    config = EngineConfig.from_env(concurrency=None, max_retries=3)

    assert config.concurrency == 4
    assert config.default_timeout == 2.5
    assert config.refresh is True
    assert config.max_retries == 3
    assert config.log_level == "DEBUG"


@pytest.mark.parametrize("env, value", [
    ("RESGRAPH_CONCURRENCY", "many"),
    ("RESGRAPH_CONCURRENCY", "0"),
    ("RESGRAPH_STATE_BACKEND", "postgres"),
    ("RESGRAPH_REFRESH", "sometimes"),
    ("RESGRAPH_LOG_LEVEL", "LOUD"),
    ("RESGRAPH_TIMEOUT", "-1"),
])
def test_invalid_settings(monkeypatch, env, value):
    _clear(monkeypatch)
    monkeypatch.setenv(env, value)
    with pytest.raises(ConfigError):
        EngineConfig.from_env()


def test_open_store_follows_backend(tmp_path):
    assert isinstance(open_store(EngineConfig(state_backend="memory")), MemoryStateStore)

    store = open_store(EngineConfig(state_path=str(tmp_path / "s.json")), stack="prod")
    assert isinstance(store, FileStateStore)
    assert store.stack == "prod"
