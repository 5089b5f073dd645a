"""Tests for the config module."""

import tempfile

import pytest
import yaml

from webmail.config import (
    CacheConfig,
    DatabaseBackend,
    ImapSettings,
    PaginationConfig,
    PostgresConfig,
    ServerConfig,
    load_config,
)


class TestImapSettings:
    """Test cases for the ImapSettings class."""

    def test_defaults(self):
        settings = ImapSettings()

        assert settings.connect_timeout == 30.0
        assert settings.fetch_timeout == 120.0
        assert settings.retry_attempts == 3
        assert settings.keepalive is True

    def test_from_dict(self):
        settings = ImapSettings.from_dict(
            {"connect_timeout": 5, "fetch_timeout": "60", "retry_attempts": 5}
        )

        assert settings.connect_timeout == 5.0
        assert settings.fetch_timeout == 60.0
        assert settings.retry_attempts == 5

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            ImapSettings(retry_attempts=0)

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            ImapSettings(fetch_timeout=0)


class TestPaginationConfig:
    def test_clamp(self):
        pagination = PaginationConfig()

        assert pagination.clamp(None) == 10
        assert pagination.clamp(0) == 10
        assert pagination.clamp(5) == 5
        assert pagination.clamp(500) == 10

    def test_default_above_max(self):
        with pytest.raises(ValueError):
            PaginationConfig(default_limit=20, max_limit=10)


class TestCacheConfig:
    def test_credentials_ttl_capped(self):
        with pytest.raises(ValueError):
            CacheConfig(credentials_ttl=600)


class TestDatabaseConfig:
    def test_backend_parsing(self):
        assert DatabaseBackend.from_string("PostgreSQL") is DatabaseBackend.POSTGRES
        assert DatabaseBackend.from_string(" memory ") is DatabaseBackend.MEMORY
        with pytest.raises(ValueError):
            DatabaseBackend.from_string("sqlite")

    def test_connection_string(self):
        pg = PostgresConfig(host="db", port=5433, database="mail", user="u", password="p")

        assert pg.connection_string == "postgresql://u:p@db:5433/mail?sslmode=prefer"

    def test_postgres_from_env(self, monkeypatch):
        monkeypatch.setenv("POSTGRES_HOST", "pg.internal")
        monkeypatch.setenv("POSTGRES_PASSWORD", "s3cret")

        pg = PostgresConfig.from_dict({})

        assert pg.host == "pg.internal"
        assert pg.password == "s3cret"


class TestServerConfig:
    def test_from_dict(self, monkeypatch):
        monkeypatch.delenv("WEBMAIL_SESSION_SECRET", raising=False)
        config = ServerConfig.from_dict(
            {
                "imap": {"fetch_timeout": 45},
                "pagination": {"default_limit": 5, "max_limit": 25},
                "security": {"session_secret": "abc"},
                "database": {"backend": "memory"},
                "web": {"port": 9000, "auth_enabled": False},
            }
        )

        assert config.imap.fetch_timeout == 45.0
        assert config.pagination.max_limit == 25
        assert config.security.session_secret == "abc"
        assert config.database.backend is DatabaseBackend.MEMORY
        assert config.web.port == 9000
        assert config.web.auth_enabled is False

    def test_secrets_from_env(self, monkeypatch):
        monkeypatch.setenv("WEBMAIL_ENCRYPTION_KEY", "env-key")
        monkeypatch.setenv("WEBMAIL_SESSION_SECRET", "env-secret")

        config = ServerConfig.from_dict({})

        assert config.security.encryption_key == "env-key"
        assert config.security.session_secret == "env-secret"


class TestLoadConfig:
    def test_load_from_file(self):
        data = {"imap": {"retry_attempts": 4}, "web": {"host": "127.0.0.1"}}

        with tempfile.NamedTemporaryFile(suffix=".yaml", mode="w+") as temp_file:
            yaml.dump(data, temp_file)
            temp_file.flush()

            config = load_config(temp_file.name)

        assert config.imap.retry_attempts == 4
        assert config.web.host == "127.0.0.1"

    def test_missing_file_uses_defaults(self):
        config = load_config("/nonexistent/webmail.yaml")

        assert config.imap.retry_attempts == 3
        assert config.database.backend is DatabaseBackend.MEMORY

    def test_invalid_config(self):
        with tempfile.NamedTemporaryFile(suffix=".yaml", mode="w+") as temp_file:
            yaml.dump(["not", "a", "mapping"], temp_file)
            temp_file.flush()

            with pytest.raises(ValueError):
                load_config(temp_file.name)

    def test_env_config_path(self, monkeypatch, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"cache": {"result_ttl": 15}}))
        monkeypatch.setenv("WEBMAIL_CONFIG", str(path))

        assert load_config().cache.result_ttl == 15
