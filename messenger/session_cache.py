"""
In-memory cache of conversation keys, one per peer.

Keys are derived at most once per peer per session. Concurrent lookups that
arrive while a derivation is running share its result.
"""

import asyncio
import functools
import logging
from typing import Dict, Optional, Tuple

from e2ee.agreement import SharedKey, derive_shared_key
from e2ee.keyvault import PrivateKeyHandle

logger = logging.getLogger(__name__)


class SessionCache:
    """
    Maps peer username to the SharedKey derived with that peer.

    Owned by the client runtime and passed explicitly to the sync engine.
    Cleared on logout, never persisted.
    """

    def __init__(self):
        self._keys: Dict[str, Tuple[bytes, SharedKey]] = {}
        self._pending: Dict[str, Tuple[bytes, asyncio.Future]] = {}
        self.derivations = 0

    def get(self, peer_username: str) -> Optional[SharedKey]:
        """Return the cached key for a peer without deriving"""
        entry = self._keys.get(peer_username)
        return entry[1] if entry else None

    async def get_or_derive(self, peer_username: str, peer_public_key: bytes,
                            my_private_key: PrivateKeyHandle) -> SharedKey:
        """
        Return the conversation key for a peer, deriving it if needed.

        Args:
            peer_username: Peer the key is for
            peer_public_key: Peer's currently published public key
            my_private_key: Our identity private key

        Returns:
            SharedKey for this peer

        Raises:
            InvalidPeerKeyError: If the peer's key is not a valid point
        """
        peer_public_key = bytes(peer_public_key)

        entry = self._keys.get(peer_username)
        if entry:
            if entry[0] == peer_public_key:
                return entry[1]
            logger.warning("Public key for %s changed; re-deriving conversation key", peer_username)
            del self._keys[peer_username]

        pending = self._pending.get(peer_username)
        if pending is None or pending[0] != peer_public_key:
            # The derivation is not owned by any caller; cancelling one
            # waiter leaves it running for the others.
            loop = asyncio.get_running_loop()
            self.derivations += 1
            future = asyncio.ensure_future(
                loop.run_in_executor(None, derive_shared_key, my_private_key, peer_public_key)
            )
            pending = (peer_public_key, future)
            self._pending[peer_username] = pending
            future.add_done_callback(functools.partial(self._derived, peer_username, pending))
        return await asyncio.shield(pending[1])

    def _derived(self, peer_username: str, pending: Tuple[bytes, asyncio.Future],
                 future: asyncio.Future):
        # exception() also marks a failure retrieved when every waiter has gone.
        failed = future.cancelled() or future.exception() is not None
        if self._pending.get(peer_username) is pending:
            del self._pending[peer_username]
            if not failed:
                self._keys[peer_username] = (pending[0], future.result())

    def invalidate(self, peer_username: str):
        """Forget the key for one peer"""
        self._keys.pop(peer_username, None)

    def clear(self):
        """Drop every key and cancel in-flight derivations (logout)"""
        for _, future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()
        self._keys.clear()
        logger.debug("Session cache cleared")

    def __contains__(self, peer_username: str) -> bool:
        return peer_username in self._keys

    def __len__(self) -> int:
        return len(self._keys)
