"""
Configuration for the chat client.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from e2ee.keyvault import DEFAULT_ITERATIONS


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


@dataclass
class ClientConfig:
    """Client configuration, overridable through E2EE_* environment variables."""

    # Relay server
    SERVER_URL: str = field(default_factory=lambda: os.getenv("E2EE_SERVER_URL", "http://localhost:8000"))
    REQUEST_TIMEOUT: float = field(default_factory=lambda: _env_float("E2EE_REQUEST_TIMEOUT", 10.0))

    # Local state ({username, public_key, session_token} only)
    STATE_DIR: Path = field(default_factory=lambda: Path(os.getenv("E2EE_STATE_DIR", "client_data")))

    # Sync timing (seconds)
    POLL_INTERVAL: float = field(default_factory=lambda: _env_float("E2EE_POLL_INTERVAL", 3.0))
    CONVERSATION_REFRESH: float = field(default_factory=lambda: _env_float("E2EE_CONVERSATION_REFRESH", 30.0))
    SEARCH_DEBOUNCE: float = 0.5

    # Poll window
    PAGE_LIMIT: int = 100
    MAX_PAGES_PER_TICK: int = 10

    # Private key wrapping work factor
    KDF_ITERATIONS: int = field(default_factory=lambda: _env_int("E2EE_KDF_ITERATIONS", DEFAULT_ITERATIONS))

    LOG_LEVEL: str = field(default_factory=lambda: os.getenv("E2EE_LOG_LEVEL", "WARNING"))

    @property
    def state_path(self) -> Path:
        """Path of the persisted client state file."""
        return self.STATE_DIR / "session.json"
