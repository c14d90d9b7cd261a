"""
Shared pytest fixtures: identities and an in-memory relay.

The in-memory relay implements the transport interface used by SyncEngine
so sync behaviour can be tested without HTTP.
"""

import asyncio
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from e2ee.keyvault import generate_identity
from messenger.session_cache import SessionCache
from messenger.sync import SyncEngine
from messenger.timeline import Envelope, TimelineStore
from messenger.transport import IdentityNotFoundError, TransportError


class FakeRelay:
    """In-memory stand-in for the relay's storage"""

    def __init__(self):
        self.identities = {}
        self.envelopes = []
        self._ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def publish(self, username: str, public_key: bytes):
        self.identities[username] = public_key

    def next_timestamp(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def store(self, sender, recipient, ciphertext, iv, tag=None, created_at=None, id=None) -> Envelope:
        envelope = Envelope(
            id=id or f"msg-{next(self._ids)}",
            sender_username=sender,
            recipient_username=recipient,
            ciphertext=ciphertext,
            iv=iv,
            created_at=created_at or self.next_timestamp(),
            tag=tag
        )
        self.envelopes.append(envelope)
        return envelope

    def transport_for(self, username: str) -> 'FakeTransport':
        return FakeTransport(self, username)


class FakeTransport:
    """Transport collaborator backed by a FakeRelay"""

    def __init__(self, relay: FakeRelay, username: str):
        self.relay = relay
        self.username = username
        self.fail_fetches = 0
        self.fail_posts = False
        self.fetch_calls = []
        self.identity_gate = None

    async def fetch_messages(self, since=None, limit=100, latest=False):
        self.fetch_calls.append(since)
        if self.fail_fetches:
            self.fail_fetches -= 1
            raise TransportError("relay unreachable")
        visible = [
            e for e in self.relay.envelopes
            if self.username in (e.sender_username, e.recipient_username)
            and (since is None or e.created_at > since)
        ]
        visible.sort(key=lambda e: e.created_at)
        if latest:
            return visible[-limit:]
        return visible[:limit]

    async def get_identity(self, username):
        if self.identity_gate is not None:
            await self.identity_gate.wait()
        if username not in self.relay.identities:
            raise IdentityNotFoundError("User not found")
        return {"username": username, "display_name": username,
                "public_key": self.relay.identities[username]}

    async def post_message(self, recipient, ciphertext, iv, tag=None):
        await asyncio.sleep(0)
        if self.fail_posts:
            raise TransportError("relay unreachable")
        envelope = self.relay.store(self.username, recipient, ciphertext, iv, tag)
        return {"id": envelope.id, "created_at": envelope.created_at}

    async def list_conversations(self):
        peers = sorted({e.peer_of(self.username) for e in self.relay.envelopes
                        if self.username in (e.sender_username, e.recipient_username)})
        return [{"username": peer} for peer in peers]


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def alice_keys():
    return generate_identity()


@pytest.fixture
def bob_keys():
    return generate_identity()


@pytest.fixture
def make_engine(relay):
    """Build a SyncEngine for a user registered on the fake relay"""
    def factory(username, keys, **kwargs):
        public_key, private_key = keys
        relay.publish(username, public_key)
        kwargs.setdefault("poll_interval", 3600)
        engine = SyncEngine(
            relay.transport_for(username),
            SessionCache(),
            TimelineStore(),
            username,
            private_key,
            **kwargs
        )
        return engine

    return factory
