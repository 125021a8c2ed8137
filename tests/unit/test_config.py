"""Tests for configuration loading."""

import pytest

import fieldflow.persistence as persistence
import fieldflow.uploads as uploads
from fieldflow.config import DEFAULT_MAX_CHUNK_SIZE, load_config
from fieldflow.persistence import (
    InMemoryExecutionRepository,
    SQLiteExecutionRepository,
    get_repository,
)
from fieldflow.uploads import InMemoryUploadStore, get_upload_store
from fieldflow.uploads.redis import RedisUploadStore


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "FIELDFLOW_CONFIG",
        "FIELDFLOW_DATABASE_URL",
        "DATABASE_URL",
        "FIELDFLOW_UPLOAD_BACKEND",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)
    monkeypatch.setattr(uploads, "_store_instance", None)


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("FIELDFLOW_CONFIG", str(tmp_path / "missing.yaml"))

    config = load_config()
    assert config.database_url is None
    assert config.uploads.backend == "inmemory"
    assert config.uploads.max_chunk_size == DEFAULT_MAX_CHUNK_SIZE == 15 * 1024 * 1024
    assert config.uploads.session_ttl_seconds is None
    assert config.callbacks.webhook_timeout == 30.0
    assert config.photo_analysis.background is False


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
uploads:
  backend: redis
  session_ttl_seconds: 3600
  redis:
    host: testhost
    port: 1234
callbacks:
  webhook_timeout: 5
  webhook_base_url: https://api.example.com
"""
    )
    monkeypatch.setenv("FIELDFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.uploads.backend == "redis"
    assert config.uploads.redis.host == "testhost"
    assert config.uploads.redis.port == 1234
    assert config.uploads.session_ttl_seconds == 3600
    assert config.callbacks.webhook_timeout == 5.0
    assert config.callbacks.webhook_base_url == "https://api.example.com"


def test_env_overrides_database_and_upload_backend(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite://from-file.db\n")
    monkeypatch.setenv("FIELDFLOW_CONFIG", str(config_path))
    monkeypatch.setenv("DATABASE_URL", "sqlite://from-env.db")
    monkeypatch.setenv("FIELDFLOW_UPLOAD_BACKEND", "REDIS")

    config = load_config()
    assert config.database_url == "sqlite://from-env.db"
    assert config.uploads.backend == "redis"


def test_get_upload_store_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
uploads:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("FIELDFLOW_CONFIG", str(config_path))

    store = get_upload_store()
    assert isinstance(store, RedisUploadStore)
    assert store.host == "confighost"
    assert store.port == 6380
    assert get_upload_store() is store


def test_get_upload_store_rejects_unknown_backend(tmp_path, monkeypatch):
    monkeypatch.setenv("FIELDFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    assert isinstance(get_upload_store(), InMemoryUploadStore)
    with pytest.raises(ValueError):
        get_upload_store(backend="s3")


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.setenv("FIELDFLOW_CONFIG", str(tmp_path / "missing.yaml"))

    assert isinstance(get_repository(), InMemoryExecutionRepository)

    repo = get_repository(database_url=f"sqlite://{tmp_path / 'wf.db'}")
    assert isinstance(repo, SQLiteExecutionRepository)
    assert repo.db_path == str(tmp_path / "wf.db")
    assert get_repository() is repo

    with pytest.raises(ValueError):
        get_repository(database_url="mysql://localhost/db")
