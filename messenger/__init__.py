"""
Client side of the end-to-end encrypted messenger.

Conversation key caching, per-peer timelines, polling synchronization
with the relay and the interactive CLI.
"""

from .client import ChatClient
from .config import ClientConfig
from .session_cache import SessionCache
from .sync import SyncEngine, SyncState
from .timeline import Envelope, Message, Timeline, TimelineStore
from .transport import (
    AuthenticationError,
    ConflictError,
    IdentityNotFoundError,
    RelayTransport,
    TransportError,
)

__all__ = [
    'ChatClient',
    'ClientConfig',
    'SessionCache',
    'SyncEngine',
    'SyncState',
    'Envelope',
    'Message',
    'Timeline',
    'TimelineStore',
    'AuthenticationError',
    'ConflictError',
    'IdentityNotFoundError',
    'RelayTransport',
    'TransportError',
]
