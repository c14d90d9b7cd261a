"""
Envelopes, decrypted messages and the per-peer timeline.

A Timeline is ordered by the server-assigned ``created_at`` and deduplicated
by envelope id. Optimistic local sends carry a temporary id until the relay's
record replaces them.
"""

import bisect
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional

from e2ee.primitives import b64decode, b64encode

logger = logging.getLogger(__name__)

DECRYPTION_FAILED_PLACEHOLDER = "⚠ Unable to decrypt this message"
TEMP_ID_PREFIX = "temp-"
RECONCILE_WINDOW = timedelta(minutes=5)


def parse_timestamp(value) -> datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime"""
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return parse_timestamp(value).isoformat()


@dataclass(frozen=True)
class Envelope:
    """
    Server-visible record of one encrypted message.

    Attributes:
        id: Globally unique message id assigned by the relay
        sender_username: Author
        recipient_username: Addressee
        ciphertext: AES-GCM ciphertext, tag appended unless ``tag`` is set
        iv: 12-byte nonce
        created_at: Ingestion time assigned by the relay
        tag: Detached authentication tag, if any
    """
    id: str
    sender_username: str
    recipient_username: str
    ciphertext: bytes
    iv: bytes
    created_at: datetime
    tag: Optional[bytes] = None

    def peer_of(self, username: str) -> str:
        """Return the other party of this envelope from ``username``'s view"""
        if self.sender_username == username:
            return self.recipient_username
        return self.sender_username

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            'id': self.id,
            'sender_username': self.sender_username,
            'recipient_username': self.recipient_username,
            'ciphertext': b64encode(self.ciphertext),
            'iv': b64encode(self.iv),
            'tag': b64encode(self.tag) if self.tag else None,
            'created_at': format_timestamp(self.created_at)
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Envelope':
        """
        Create from the relay's JSON form.

        Raises:
            ValueError: If a field is missing or malformed
        """
        try:
            return cls(
                id=str(data['id']),
                sender_username=data['sender_username'],
                recipient_username=data['recipient_username'],
                ciphertext=b64decode(data['ciphertext']),
                iv=b64decode(data['iv']),
                created_at=parse_timestamp(data['created_at']),
                tag=b64decode(data['tag']) if data.get('tag') else None
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed envelope: {e}") from e


@dataclass(frozen=True)
class Message:
    """
    Client view of an Envelope.

    ``plaintext`` is local-only and never transmitted. ``pending`` marks an
    optimistic send that the relay has not acknowledged yet; ``send_failed``
    marks one the relay never accepted.
    """
    envelope: Envelope
    plaintext: Optional[str] = None
    decryption_failed: bool = False
    pending: bool = False
    send_failed: bool = False

    @property
    def id(self) -> str:
        return self.envelope.id

    @property
    def created_at(self) -> datetime:
        return self.envelope.created_at

    @property
    def sender_username(self) -> str:
        return self.envelope.sender_username

    @property
    def recipient_username(self) -> str:
        return self.envelope.recipient_username

    @property
    def text(self) -> str:
        """Plaintext, or the placeholder for an unreadable message"""
        if self.decryption_failed:
            return DECRYPTION_FAILED_PLACEHOLDER
        return self.plaintext or ""

    @classmethod
    def decrypted(cls, envelope: Envelope, plaintext: str) -> 'Message':
        return cls(envelope=envelope, plaintext=plaintext)

    @classmethod
    def undecryptable(cls, envelope: Envelope) -> 'Message':
        return cls(envelope=envelope, decryption_failed=True)


def new_temporary_id() -> str:
    return TEMP_ID_PREFIX + uuid.uuid4().hex


class Timeline:
    """Ordered, id-deduplicated messages exchanged with one peer."""

    def __init__(self, peer_username: str):
        self.peer_username = peer_username
        self._messages: List[Message] = []
        self._by_id: Dict[str, Message] = {}

    def merge(self, message: Message) -> bool:
        """
        Insert a message in ``created_at`` order.

        An id that is already present is ignored. A relay record matching a
        pending local send replaces that local entry.

        Returns:
            True if the timeline changed
        """
        if message.id in self._by_id:
            return False

        if not message.pending:
            local = self._find_pending_match(message.envelope)
            if local is not None:
                logger.debug("Reconciled local message %s with %s", local.id, message.id)
                self._remove(local)
                message = replace(message, plaintext=local.plaintext, decryption_failed=False)

        self._insert(message)
        return True

    def acknowledge(self, temp_id: str, message_id: str, created_at: datetime) -> Optional[Message]:
        """
        Replace a pending local message with the relay's id and timestamp.

        Returns:
            The acknowledged message, or None if it was already reconciled
        """
        local = self._by_id.get(temp_id)
        if local is None:
            return self._by_id.get(message_id)
        self._remove(local)
        if message_id in self._by_id:
            return self._by_id[message_id]

        envelope = replace(local.envelope, id=message_id, created_at=parse_timestamp(created_at))
        acknowledged = replace(local, envelope=envelope, pending=False, send_failed=False)
        self._insert(acknowledged)
        return acknowledged

    def mark_send_failed(self, temp_id: str) -> Optional[Message]:
        local = self._by_id.get(temp_id)
        if local is None:
            return None
        failed = replace(local, pending=False, send_failed=True)
        index = self._messages.index(local)
        self._messages[index] = failed
        self._by_id[temp_id] = failed
        return failed

    def _find_pending_match(self, envelope: Envelope) -> Optional[Message]:
        for candidate in self._messages:
            if not (candidate.pending or candidate.send_failed):
                continue
            local = candidate.envelope
            if (local.sender_username == envelope.sender_username
                    and local.recipient_username == envelope.recipient_username
                    and local.ciphertext == envelope.ciphertext
                    and local.iv == envelope.iv
                    and abs(envelope.created_at - local.created_at) <= RECONCILE_WINDOW):
                return candidate
        return None

    def _insert(self, message: Message):
        bisect.insort(self._messages, message, key=lambda m: m.created_at)
        self._by_id[message.id] = message

    def _remove(self, message: Message):
        self._messages.remove(message)
        del self._by_id[message.id]

    @property
    def last_created_at(self) -> Optional[datetime]:
        return self._messages[-1].created_at if self._messages else None

    def messages(self) -> List[Message]:
        return list(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._by_id

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __len__(self) -> int:
        return len(self._messages)


class TimelineStore:
    """Owns one Timeline per peer for the client session."""

    def __init__(self):
        self._timelines: Dict[str, Timeline] = {}

    def get(self, peer_username: str) -> Optional[Timeline]:
        return self._timelines.get(peer_username)

    def get_or_create(self, peer_username: str) -> Timeline:
        timeline = self._timelines.get(peer_username)
        if timeline is None:
            timeline = Timeline(peer_username)
            self._timelines[peer_username] = timeline
        return timeline

    def peers(self) -> List[str]:
        return list(self._timelines)

    def clear(self):
        self._timelines.clear()
