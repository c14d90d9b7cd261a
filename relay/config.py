"""
Configuration for the relay server.
"""

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


@dataclass
class ServerConfig:
    """Relay configuration, overridable through RELAY_* environment variables."""

    DATABASE_URL: str = field(default_factory=lambda: os.getenv("RELAY_DATABASE_URL", "sqlite+aiosqlite:///./relay.db"))

    # Bearer tokens - set RELAY_SECRET_KEY in production
    SECRET_KEY: str = field(default_factory=lambda: os.getenv("RELAY_SECRET_KEY", "change-this-secret-in-production"))
    ALGORITHM: str = "HS256"
    TOKEN_EXPIRE_MINUTES: int = field(default_factory=lambda: _env_int("RELAY_TOKEN_EXPIRE_MINUTES", 60 * 24))

    # Server-side password hashes (independent of the client key wrapping)
    BCRYPT_ROUNDS: int = field(default_factory=lambda: _env_int("RELAY_BCRYPT_ROUNDS", 12))

    HOST: str = field(default_factory=lambda: os.getenv("RELAY_HOST", "127.0.0.1"))
    PORT: int = field(default_factory=lambda: _env_int("RELAY_PORT", 8000))

    # Maximum envelopes per GET /messages
    PAGE_LIMIT: int = field(default_factory=lambda: _env_int("RELAY_PAGE_LIMIT", 100))
    LOG_LEVEL: str = field(default_factory=lambda: os.getenv("RELAY_LOG_LEVEL", "INFO"))
