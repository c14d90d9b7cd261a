"""
Persisted client state.

Only ``{username, public_key, session_token}`` is written to disk. The
unwrapped private key and all conversation keys are memory-only.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from e2ee.primitives import b64decode, b64encode

logger = logging.getLogger(__name__)


@dataclass
class ClientState:
    username: str
    public_key: bytes
    session_token: str

    def to_dict(self) -> dict:
        return {
            'username': self.username,
            'public_key': b64encode(self.public_key),
            'session_token': self.session_token
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ClientState':
        return cls(
            username=data['username'],
            public_key=b64decode(data['public_key']),
            session_token=data['session_token']
        )


class ClientStateFile:
    """Reads and writes ClientState as a JSON file readable only by the owner."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[ClientState]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return ClientState.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            logger.warning("Ignoring unreadable client state %s: %s", self.path, e)
            return None

    def save(self, state: ClientState):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f)

    def clear(self):
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
