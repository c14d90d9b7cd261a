"""
Relay server for the end-to-end encrypted messenger.

Stores identities and opaque envelopes; never decrypts.
"""

from .config import ServerConfig
from .main import create_app

__all__ = ['ServerConfig', 'create_app']
