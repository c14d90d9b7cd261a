"""
Chat client facade used by the presentation layer.

Ties the key vault, session cache, timeline store, relay transport and sync
engine together for one logged-in identity.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from e2ee.errors import WrongPasswordError
from e2ee.keyvault import PrivateKeyHandle, generate_identity, unwrap_private_key, wrap_private_key

from .config import ClientConfig
from .session_cache import SessionCache
from .state import ClientState, ClientStateFile
from .sync import SyncEngine
from .timeline import Message, Timeline, TimelineStore
from .transport import AuthenticationError, RelayTransport, TransportError

logger = logging.getLogger(__name__)

MIN_SEARCH_LENGTH = 2


class Debouncer:
    """
    Collapses bursts of calls so only the last one within ``delay`` runs.
    """

    def __init__(self, delay: float):
        self.delay = delay
        self._task: Optional[asyncio.Task] = None

    async def call(self, func, *args):
        """
        Schedule ``func(*args)`` after the delay, superseding earlier calls.

        Returns:
            The coroutine's result, or None if a later call superseded this one
        """
        if self._task is not None and not self._task.done():
            self._task.cancel()

        async def delayed():
            await asyncio.sleep(self.delay)
            return await func(*args)

        task = asyncio.create_task(delayed())
        self._task = task
        try:
            return await task
        except asyncio.CancelledError:
            if task.cancelled() and self._task is not task:
                return None
            raise


class ChatClient:
    """
    End-to-end encrypted chat client.
    """

    def __init__(self, config: Optional[ClientConfig] = None,
                 transport: Optional[RelayTransport] = None):
        """
        Initialize chat client.

        Args:
            config: Client configuration
            transport: Relay transport (defaults to one built from config)
        """
        self.config = config or ClientConfig()
        self.transport = transport or RelayTransport(self.config.SERVER_URL, self.config.REQUEST_TIMEOUT)
        self.state_file = ClientStateFile(self.config.state_path)
        self.session_cache = SessionCache()
        self.timelines = TimelineStore()
        self.username: Optional[str] = None
        self.public_key: Optional[bytes] = None
        self.sync: Optional[SyncEngine] = None
        self._private_key: Optional[PrivateKeyHandle] = None
        self._search = Debouncer(self.config.SEARCH_DEBOUNCE)

        saved = self.state_file.load()
        if saved:
            self.username = saved.username
            self.public_key = saved.public_key
            self.transport.token = saved.session_token

    @property
    def is_unlocked(self) -> bool:
        return self._private_key is not None

    async def create_identity(self, username: str, password: str):
        """
        Register a new identity: generate a keypair, wrap the private key with
        ``password`` and publish both.

        Raises:
            ConflictError: If the username is already taken
        """
        loop = asyncio.get_running_loop()
        public_key, private_key = generate_identity()
        wrapped = await loop.run_in_executor(
            None, wrap_private_key, private_key, password, self.config.KDF_ITERATIONS
        )

        data = await self.transport.create_identity(username, password, public_key, wrapped)
        await self._activate(username, public_key, private_key, data["session_token"])
        logger.info("Registered identity %s", username)

    async def login(self, username: str, password: str):
        """
        Authenticate and unwrap the private key.

        Raises:
            AuthenticationError: If the relay rejects the credentials
            WrongPasswordError: If the wrapped key cannot be unwrapped
        """
        session = await self.transport.create_session(username, password)
        private_key = await self._unwrap(session["wrapped_key"], password)
        if private_key.public_key != session["public_key"]:
            logger.error("Unwrapped key for %s does not match its published public key", username)
            raise WrongPasswordError()
        await self._activate(username, session["public_key"], private_key, session["session_token"])
        logger.info("Logged in as %s", username)

    async def unlock_identity(self, password: str):
        """
        Unlock the stored identity after a restart.

        Raises:
            WrongPasswordError: If the password is rejected or cannot unwrap
            TransportError: If the relay is unreachable
        """
        if not self.username:
            raise WrongPasswordError("No stored identity to unlock")
        try:
            await self.login(self.username, password)
        except AuthenticationError:
            raise WrongPasswordError() from None

    async def _unwrap(self, wrapped_key: Dict, password: str) -> PrivateKeyHandle:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, unwrap_private_key, wrapped_key, password)

    async def _activate(self, username: str, public_key: bytes, private_key: PrivateKeyHandle, token: str):
        if self.sync is not None:
            await self.sync.stop()
            self.sync.reset()
        self.session_cache.clear()
        self.timelines.clear()

        self.username = username
        self.public_key = public_key
        self._private_key = private_key
        self.transport.token = token
        self.state_file.save(ClientState(username=username, public_key=public_key, session_token=token))

        self.sync = SyncEngine(
            self.transport,
            self.session_cache,
            self.timelines,
            username,
            private_key,
            poll_interval=self.config.POLL_INTERVAL,
            conversation_refresh=self.config.CONVERSATION_REFRESH,
            page_limit=self.config.PAGE_LIMIT,
            max_pages_per_tick=self.config.MAX_PAGES_PER_TICK
        )

    def _require_sync(self) -> SyncEngine:
        if self.sync is None:
            raise WrongPasswordError("Identity is locked")
        return self.sync

    async def send_message(self, peer: str, plaintext: str) -> Message:
        return await self._require_sync().send_message(peer, plaintext)

    def get_timeline(self, peer: str) -> List[Message]:
        if self.sync is None:
            return []
        return self.sync.get_timeline(peer)

    async def open_conversation(self, peer: str) -> Timeline:
        return await self._require_sync().open_conversation(peer)

    def close_conversation(self):
        if self.sync is not None:
            self.sync.close_conversation()

    async def refresh_conversations(self) -> List[Dict]:
        return await self._require_sync().refresh_conversations()

    async def search_users(self, query: str) -> Optional[List[Dict]]:
        """
        Debounced user search.

        Returns:
            Matching users, an empty list for queries shorter than two
            characters, or None when a newer query superseded this one
        """
        query = query.strip()
        if len(query) < MIN_SEARCH_LENGTH:
            return []

        async def search(q: str) -> List[Dict]:
            try:
                return await self.transport.search_identities(q)
            except TransportError as e:
                logger.warning("User search failed: %s", e)
                return []

        return await self._search.call(search, query)

    async def logout(self):
        """Drop every key and timeline and end the relay session"""
        if self.sync is not None:
            await self.sync.stop()
            self.sync.reset()
            self.sync = None
        self.session_cache.clear()
        self.timelines.clear()
        self._private_key = None
        await self.transport.end_session()
        self.state_file.clear()
        self.username = None
        self.public_key = None

    async def aclose(self):
        if self.sync is not None:
            await self.sync.stop()
        await self.transport.aclose()
