"""
Configuration management.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Config:
    """
    Application configuration.

    Loads from environment variables with sensible defaults.
    """

    # Server
    host: str = field(default_factory=lambda: os.getenv("HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "8000")))
    debug: bool = field(default_factory=lambda: _env_bool("DEBUG"))
    production: bool = field(default_factory=lambda: _env_bool("PRODUCTION"))
    allowed_origins: list[str] = field(
        default_factory=lambda: _env_list("ALLOWED_ORIGINS", "http://localhost:3000")
    )

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "standard"))

    # Workflow
    strict_progression: bool = field(default_factory=lambda: _env_bool("STRICT_PROGRESSION"))

    # Auth
    token_secret: str = field(default_factory=lambda: os.getenv("TOKEN_SECRET", ""))
    token_ttl_hours: int = field(default_factory=lambda: int(os.getenv("TOKEN_TTL_HOURS", "24")))

    # Notifications
    notification_max_attempts: int = field(
        default_factory=lambda: int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "5"))
    )
    notification_backoff_seconds: float = field(
        default_factory=lambda: float(os.getenv("NOTIFICATION_BACKOFF_SECONDS", "30"))
    )
    email_webhook_url: Optional[str] = field(
        default_factory=lambda: os.getenv("EMAIL_WEBHOOK_URL") or None
    )
    request_timeout: int = field(default_factory=lambda: int(os.getenv("REQUEST_TIMEOUT", "30")))

    # Data
    data_dir: Optional[str] = field(default_factory=lambda: os.getenv("DATA_DIR") or None)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from environment."""
        return cls()

    def data_path(self, filename: str) -> Optional[str]:
        """Path of a repository file under DATA_DIR, or None for in-memory storage."""
        if not self.data_dir:
            return None
        return str(Path(self.data_dir) / filename)

    def to_dict(self) -> dict:
        """Convert config to dictionary. The token secret is never included."""
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
            "production": self.production,
            "allowed_origins": self.allowed_origins,
            "log_level": self.log_level,
            "log_format": self.log_format,
            "strict_progression": self.strict_progression,
            "token_ttl_hours": self.token_ttl_hours,
            "notification_max_attempts": self.notification_max_attempts,
            "notification_backoff_seconds": self.notification_backoff_seconds,
            "email_webhook_configured": bool(self.email_webhook_url),
            "request_timeout": self.request_timeout,
            "data_dir": self.data_dir,
        }
