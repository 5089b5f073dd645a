"""Configuration handling for the webmail gateway."""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml  # type: ignore
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


# Load environment variables from .env file if it exists
load_dotenv()


@dataclass
class ImapSettings:
    """Timeouts and retry policy for IMAP sessions."""

    connect_timeout: float = 30.0
    auth_timeout: float = 30.0
    fetch_timeout: float = 120.0
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    keepalive: bool = True
    use_ssl: bool = True

    def __post_init__(self):
        if self.retry_attempts < 1:
            raise ValueError("imap.retry_attempts must be at least 1")
        for name in ("connect_timeout", "auth_timeout", "fetch_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"imap.{name} must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImapSettings":
        return cls(
            connect_timeout=float(data.get("connect_timeout", 30.0)),
            auth_timeout=float(data.get("auth_timeout", 30.0)),
            fetch_timeout=float(data.get("fetch_timeout", 120.0)),
            retry_attempts=int(data.get("retry_attempts", 3)),
            retry_base_delay=float(data.get("retry_base_delay", 1.0)),
            keepalive=data.get("keepalive", True),
            use_ssl=data.get("use_ssl", True),
        )


@dataclass
class SmtpSettings:
    """SMTP transport settings."""

    timeout: float = 30.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SmtpSettings":
        return cls(timeout=float(data.get("timeout", 30.0)))


@dataclass
class CacheConfig:
    """TTLs (seconds) for the in-process caches."""

    result_ttl: int = 60
    credentials_ttl: int = 300

    def __post_init__(self):
        if self.result_ttl <= 0 or self.credentials_ttl <= 0:
            raise ValueError("Cache TTLs must be positive")
        if self.credentials_ttl > 300:
            raise ValueError(
                "cache.credentials_ttl must not exceed 300 seconds; "
                "decrypted credentials are short-lived"
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheConfig":
        return cls(
            result_ttl=int(data.get("result_ttl", 60)),
            credentials_ttl=int(data.get("credentials_ttl", 300)),
        )


@dataclass
class PaginationConfig:
    """Page size defaults and hard caps."""

    default_limit: int = 10
    max_limit: int = 10
    conversations_max_limit: int = 50

    def __post_init__(self):
        if not (1 <= self.default_limit <= self.max_limit):
            raise ValueError(
                f"pagination.default_limit ({self.default_limit}) must be between 1 "
                f"and max_limit ({self.max_limit})"
            )
        if self.conversations_max_limit < 1:
            raise ValueError("pagination.conversations_max_limit must be positive")

    def clamp(self, limit: Optional[int]) -> int:
        if not limit or limit < 1:
            return self.default_limit
        return min(limit, self.max_limit)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaginationConfig":
        return cls(
            default_limit=int(data.get("default_limit", 10)),
            max_limit=int(data.get("max_limit", 10)),
            conversations_max_limit=int(data.get("conversations_max_limit", 50)),
        )


@dataclass
class SecurityConfig:
    """Secrets for credential encryption and session verification."""

    encryption_key: str = ""
    session_secret: str = ""
    session_expiry_hours: int = 24

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityConfig":
        return cls(
            encryption_key=data.get("encryption_key")
            or os.environ.get("WEBMAIL_ENCRYPTION_KEY", ""),
            session_secret=data.get("session_secret")
            or os.environ.get("WEBMAIL_SESSION_SECRET", ""),
            session_expiry_hours=int(data.get("session_expiry_hours", 24)),
        )


class DatabaseBackend(Enum):
    """Document store backend type."""

    MEMORY = "memory"
    POSTGRES = "postgres"

    @classmethod
    def from_string(cls, value: str) -> "DatabaseBackend":
        normalized = value.lower().strip()
        if normalized == "memory":
            return cls.MEMORY
        if normalized in ("postgres", "postgresql"):
            return cls.POSTGRES
        raise ValueError(
            f"Invalid database backend '{value}'. Must be 'memory' or 'postgres'."
        )


@dataclass
class PostgresConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "webmail"
    user: str = "webmail"
    password: str = ""
    ssl_mode: str = "prefer"

    @property
    def connection_string(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}?sslmode={self.ssl_mode}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PostgresConfig":
        return cls(
            host=data.get("host") or os.environ.get("POSTGRES_HOST", "localhost"),
            port=int(data.get("port") or os.environ.get("POSTGRES_PORT", "5432")),
            database=data.get("database")
            or os.environ.get("POSTGRES_DATABASE", "webmail"),
            user=data.get("user") or os.environ.get("POSTGRES_USER", "webmail"),
            password=data.get("password") or os.environ.get("POSTGRES_PASSWORD", ""),
            ssl_mode=data.get("ssl_mode", "prefer"),
        )


@dataclass
class DatabaseConfig:
    """Database configuration."""

    backend: DatabaseBackend = DatabaseBackend.MEMORY
    postgres: PostgresConfig = field(default_factory=PostgresConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatabaseConfig":
        backend_str = data.get("backend") or os.environ.get(
            "WEBMAIL_DB_BACKEND", "memory"
        )
        return cls(
            backend=DatabaseBackend.from_string(backend_str),
            postgres=PostgresConfig.from_dict(data.get("postgres", {})),
        )


@dataclass
class WebConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    auth_enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebConfig":
        return cls(
            host=data.get("host") or os.environ.get("WEB_HOST", "0.0.0.0"),
            port=int(data.get("port") or os.environ.get("WEB_PORT", "8080")),
            auth_enabled=data.get("auth_enabled", True),
        )


@dataclass
class ServerConfig:
    """Top-level service configuration."""

    imap: ImapSettings = field(default_factory=ImapSettings)
    smtp: SmtpSettings = field(default_factory=SmtpSettings)
    cache: CacheConfig = field(default_factory=CacheConfig)
    pagination: PaginationConfig = field(default_factory=PaginationConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    web: WebConfig = field(default_factory=WebConfig)

    def __post_init__(self):
        if self.web.auth_enabled and not self.security.session_secret:
            logger.warning(
                "security.session_secret not configured - sessions are signed "
                "with an insecure development secret"
            )
        if not self.security.encryption_key and not self.security.session_secret:
            logger.warning(
                "security.encryption_key not configured - stored mail passwords "
                "use a development key"
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        """Create configuration from dictionary."""
        return cls(
            imap=ImapSettings.from_dict(data.get("imap", {})),
            smtp=SmtpSettings.from_dict(data.get("smtp", {})),
            cache=CacheConfig.from_dict(data.get("cache", {})),
            pagination=PaginationConfig.from_dict(data.get("pagination", {})),
            security=SecurityConfig.from_dict(data.get("security", {})),
            database=DatabaseConfig.from_dict(data.get("database", {})),
            web=WebConfig.from_dict(data.get("web", {})),
        )


def load_config(config_path: Optional[str] = None) -> ServerConfig:
    """Load configuration from file or environment variables.

    Args:
        config_path: Path to configuration file

    Returns:
        Server configuration

    Raises:
        ValueError: If configuration is invalid
    """
    # Container paths first (Docker), then local dev paths
    default_locations = [
        Path("/app/config/config.yaml"),
        Path("/app/config/config.yml"),
        Path("config/config.yaml"),
        Path("config/config.yml"),
        Path("config.yaml"),
        Path("config.yml"),
        Path("~/.config/webmail/config.yaml"),
        Path("/etc/webmail/config.yaml"),
    ]

    config_data: Dict[str, Any] = {}
    config_path = config_path or os.environ.get("WEBMAIL_CONFIG")

    if config_path:
        try:
            with open(Path(config_path).expanduser(), "r") as f:
                config_data = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {config_path}")
        except FileNotFoundError:
            logger.warning(f"Configuration file not found: {config_path}")
    else:
        for path in default_locations:
            expanded_path = path.expanduser()
            if expanded_path.exists():
                with open(expanded_path, "r") as f:
                    config_data = yaml.safe_load(f) or {}
                logger.info(f"Loaded configuration from {expanded_path}")
                break

    if not config_data:
        logger.info("No configuration file found, using defaults and environment")

    if not isinstance(config_data, dict):
        raise ValueError("Configuration file must contain a mapping")

    try:
        return ServerConfig.from_dict(config_data)
    except KeyError as e:
        raise ValueError(f"Missing required configuration: {e}")
