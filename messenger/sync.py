"""
Polling synchronization of encrypted messages.

The engine polls the relay for envelopes newer than its cursor, files them
into per-peer inboxes, and merges the active conversation's inbox into its
Timeline after decrypting. Sending runs independently of polling.

State machine: IDLE -> POLLING -> MERGING -> IDLE.
"""

import asyncio
import functools
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from e2ee.agreement import SharedKey
from e2ee.cipher import decrypt, encrypt
from e2ee.errors import DecryptionError, InvalidPeerKeyError, NoKeyMaterialError
from e2ee.keyvault import PrivateKeyHandle

from .session_cache import SessionCache
from .timeline import Envelope, Message, Timeline, TimelineStore, new_temporary_id
from .transport import IdentityNotFoundError, TransportError

logger = logging.getLogger(__name__)

MessageListener = Callable[[str, Message], None]


class SyncState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    MERGING = "merging"


class ConversationToken:
    """Cancellation token for one opened conversation"""

    def __init__(self, peer_username: str):
        self.peer_username = peer_username
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class SyncEngine:
    """
    Keeps the local timelines in step with the relay for one identity.

    The session cache and timeline store are owned by the caller and passed
    in so that logout can invalidate them.
    """

    def __init__(self, transport, session_cache: SessionCache, timelines: TimelineStore,
                 username: str, private_key: PrivateKeyHandle, *,
                 poll_interval: float = 3.0, conversation_refresh: float = 30.0,
                 page_limit: int = 100, max_pages_per_tick: int = 10,
                 use_cursor: bool = True):
        """
        Initialize the sync engine.

        Args:
            transport: Relay collaborator (see RelayTransport)
            session_cache: Conversation key cache
            timelines: Per-peer timeline store
            username: Our username
            private_key: Our unwrapped identity key
            poll_interval: Seconds between polls while a conversation is open
            conversation_refresh: Seconds between conversation list refreshes
            page_limit: Envelopes requested per page
            max_pages_per_tick: Pages drained per poll before yielding
            use_cursor: Fetch only envelopes newer than the cursor; when False,
                every poll re-reads the newest page_limit envelopes
        """
        self.transport = transport
        self.session_cache = session_cache
        self.timelines = timelines
        self.username = username
        self.private_key = private_key
        self.poll_interval = poll_interval
        self.conversation_refresh = conversation_refresh
        self.page_limit = page_limit
        self.max_pages_per_tick = max_pages_per_tick
        self.use_cursor = use_cursor

        self.state = SyncState.IDLE
        self.cursor: Optional[datetime] = None
        self.conversations: List[Dict] = []
        self.listeners: List[MessageListener] = []

        self._inbox: Dict[str, Dict[str, Envelope]] = {}
        self._peer_keys: Dict[str, bytes] = {}
        self._active: Optional[ConversationToken] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def active_peer(self) -> Optional[str]:
        return self._active.peer_username if self._active else None

    # Polling

    async def poll_once(self) -> int:
        """
        Run one Polling -> Merging cycle.

        Transport failures are logged and left for the next tick.

        Returns:
            Number of messages added to the active timeline
        """
        async with self._lock:
            self.state = SyncState.POLLING
            try:
                await self._fetch_new()
            except TransportError as e:
                logger.warning("Poll failed, retrying next tick: %s", e)
            finally:
                self.state = SyncState.IDLE

            token = self._active
            if token is None or token.cancelled:
                return 0
            return await self._merge_inbox(token)

    async def _fetch_new(self):
        if not self.use_cursor:
            # Re-read the newest window; envelopes already merged are skipped.
            page = await self.transport.fetch_messages(limit=self.page_limit, latest=True)
            for envelope in page:
                self._file(envelope)
            return

        for _ in range(self.max_pages_per_tick):
            page = await self.transport.fetch_messages(since=self.cursor, limit=self.page_limit)
            for envelope in page:
                self._file(envelope)
            if len(page) < self.page_limit:
                break

    def _file(self, envelope: Envelope):
        if self.username not in (envelope.sender_username, envelope.recipient_username):
            logger.warning("Ignoring envelope %s not addressed to %s", envelope.id, self.username)
            return

        if self.cursor is None or envelope.created_at > self.cursor:
            self.cursor = envelope.created_at

        peer = envelope.peer_of(self.username)
        timeline = self.timelines.get(peer)
        if timeline is not None and envelope.id in timeline:
            return
        self._inbox.setdefault(peer, {})[envelope.id] = envelope

    async def _poll_loop(self, token: ConversationToken):
        while not token.cancelled:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected error during poll of %s", token.peer_username)
            await asyncio.sleep(self.poll_interval)

    # Merging

    async def _merge_inbox(self, token: ConversationToken) -> int:
        peer = token.peer_username
        pending = self._inbox.get(peer)
        if not pending:
            return 0

        self.state = SyncState.MERGING
        try:
            try:
                key = await self._resolve_key(peer)
            except (NoKeyMaterialError, InvalidPeerKeyError) as e:
                logger.warning("Conversation with %s is blocked: %s", peer, e)
                return 0
            except TransportError as e:
                logger.warning("Could not look up key for %s: %s", peer, e)
                return 0

            batch = sorted(pending.values(), key=lambda envelope: envelope.created_at)
            results = await asyncio.gather(*(self._decrypt(envelope, key) for envelope in batch))

            if token.cancelled or token is not self._active:
                logger.debug("Discarding stale merge of %d messages for %s", len(results), peer)
                return 0

            timeline = self.timelines.get_or_create(peer)
            merged = 0
            for envelope, message in zip(batch, results):
                pending.pop(envelope.id, None)
                if timeline.merge(message):
                    merged += 1
                    self._notify(peer, message)
            return merged
        finally:
            self.state = SyncState.IDLE

    async def _decrypt(self, envelope: Envelope, key: SharedKey) -> Message:
        loop = asyncio.get_running_loop()
        try:
            plaintext = await loop.run_in_executor(
                None, functools.partial(decrypt, envelope.ciphertext, envelope.iv, key, tag=envelope.tag)
            )
        except DecryptionError:
            logger.warning("Message %s from %s could not be decrypted",
                           envelope.id, envelope.sender_username)
            return Message.undecryptable(envelope)
        return Message.decrypted(envelope, plaintext)

    async def merge(self, envelopes: List[Envelope]) -> int:
        """
        File envelopes and merge the active conversation's inbox.

        Re-delivering an id that is already on the timeline is a no-op.
        """
        async with self._lock:
            for envelope in envelopes:
                self._file(envelope)
            token = self._active
            if token is None:
                return 0
            return await self._merge_inbox(token)

    # Keys

    async def _peer_public_key(self, peer: str) -> bytes:
        public_key = self._peer_keys.get(peer)
        if public_key:
            return public_key
        try:
            identity = await self.transport.get_identity(peer)
        except IdentityNotFoundError:
            raise NoKeyMaterialError(f"{peer} has not published a key") from None
        public_key = identity.get("public_key")
        if not public_key:
            raise NoKeyMaterialError(f"{peer} has not published a key")
        self._peer_keys[peer] = public_key
        return public_key

    async def _resolve_key(self, peer: str) -> SharedKey:
        public_key = await self._peer_public_key(peer)
        try:
            return await self.session_cache.get_or_derive(peer, public_key, self.private_key)
        except InvalidPeerKeyError:
            self._peer_keys.pop(peer, None)
            raise

    # Sending

    async def send_message(self, peer: str, plaintext: str) -> Message:
        """
        Encrypt and submit a message, appending it optimistically.

        Raises:
            NoKeyMaterialError: If the peer has no resolvable public key
            InvalidPeerKeyError: If the peer's published key is invalid
            TransportError: If the relay could not be reached; the local
                entry stays on the timeline marked ``send_failed``
        """
        if not plaintext or not plaintext.strip():
            raise ValueError("Cannot send an empty message")

        key = await self._resolve_key(peer)
        payload = encrypt(plaintext, key)

        temp_id = new_temporary_id()
        envelope = Envelope(
            id=temp_id,
            sender_username=self.username,
            recipient_username=peer,
            ciphertext=payload.ciphertext,
            iv=payload.iv,
            created_at=datetime.now(timezone.utc)
        )
        message = Message(envelope=envelope, plaintext=plaintext, pending=True)
        timeline = self.timelines.get_or_create(peer)
        timeline.merge(message)
        self._notify(peer, message)

        try:
            ack = await self.transport.post_message(peer, payload.ciphertext, payload.iv)
        except TransportError:
            failed = timeline.mark_send_failed(temp_id)
            if failed is not None:
                self._notify(peer, failed)
            raise

        acknowledged = timeline.acknowledge(temp_id, ack["id"], ack["created_at"])
        return acknowledged or message

    # Conversations

    def get_timeline(self, peer: str) -> List[Message]:
        timeline = self.timelines.get(peer)
        return timeline.messages() if timeline else []

    def unread_counts(self) -> Dict[str, int]:
        """Buffered incoming envelopes per inactive peer; our own sends are not unread"""
        active = self.active_peer
        counts = {}
        for peer, envelopes in self._inbox.items():
            if peer == active:
                continue
            incoming = sum(1 for envelope in envelopes.values()
                           if envelope.sender_username != self.username)
            if incoming:
                counts[peer] = incoming
        return counts

    async def open_conversation(self, peer: str, poll: bool = True) -> Timeline:
        """
        Make ``peer`` the active conversation and start polling for it.

        Any merge still running for the previous conversation is discarded.

        Args:
            peer: Peer username
            poll: Start the timer-driven poll loop; when False the caller
                drives ``poll_once`` itself
        """
        self.close_conversation()
        self._peer_keys.pop(peer, None)
        token = ConversationToken(peer)
        self._active = token
        timeline = self.timelines.get_or_create(peer)
        if poll:
            self._poll_task = asyncio.create_task(self._poll_loop(token))
        return timeline

    def close_conversation(self):
        if self._active is not None:
            self._active.cancel()
            self._active = None
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def refresh_conversations(self) -> List[Dict]:
        try:
            self.conversations = await self.transport.list_conversations()
        except TransportError as e:
            logger.warning("Conversation list refresh failed: %s", e)
        return self.conversations

    async def _refresh_loop(self):
        while True:
            await self.refresh_conversations()
            await asyncio.sleep(self.conversation_refresh)

    def start(self):
        """Start the periodic conversation list refresh"""
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self):
        """Cancel all background tasks"""
        tasks = [task for task in (self._poll_task, self._refresh_task) if task is not None]
        self.close_conversation()
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def reset(self):
        """Forget cursor, inboxes and peer keys (logout)"""
        self.close_conversation()
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None
        self.cursor = None
        self._inbox.clear()
        self._peer_keys.clear()
        self.conversations = []

    def _notify(self, peer: str, message: Message):
        for listener in self.listeners:
            try:
                listener(peer, message)
            except Exception:
                logger.exception("Message listener failed")
