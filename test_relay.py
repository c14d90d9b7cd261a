"""
Tests for the relay API and for the chat client running against it.
"""

import asyncio
import base64
import os
from datetime import datetime, timedelta

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from e2ee.errors import InvalidPeerKeyError, NoKeyMaterialError, WrongPasswordError
from e2ee.keyvault import MIN_ITERATIONS, generate_identity
from messenger.client import ChatClient
from messenger.config import ClientConfig
from messenger.transport import ConflictError, RelayTransport
from relay.auth import create_access_token, verify_token
from relay.config import ServerConfig
from relay.main import create_app


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def opaque_wrapped_key() -> dict:
    return {
        "salt": b64(os.urandom(16)),
        "iv": b64(os.urandom(12)),
        "ciphertext": b64(os.urandom(150)),
        "iterations": MIN_ITERATIONS
    }


@pytest.fixture
def server_config(tmp_path):
    return ServerConfig(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}",
        SECRET_KEY="test-secret",
        BCRYPT_ROUNDS=4
    )


@pytest.fixture
def api(server_config):
    with TestClient(create_app(server_config)) as client:
        yield client


def register(api, username, password="correctpw"):
    public_key, _ = generate_identity()
    wrapped = opaque_wrapped_key()
    response = api.post("/identities", json={
        "username": username,
        "password": password,
        "public_key": b64(public_key),
        "wrapped_key": wrapped
    })
    assert response.status_code == 201, response.text
    token = response.json()["session_token"]
    return {"Authorization": f"Bearer {token}"}, public_key, wrapped


def send(api, headers, recipient, ciphertext=b"\x01" * 21):
    return api.post("/messages", headers=headers, json={
        "recipient_username": recipient,
        "ciphertext": b64(ciphertext),
        "iv": b64(b"\x02" * 12)
    })


class TestIdentities:

    def test_register_and_conflict(self, api):
        register(api, "alice")
        public_key, _ = generate_identity()
        response = api.post("/identities", json={
            "username": "alice",
            "password": "anotherpw",
            "public_key": b64(public_key),
            "wrapped_key": opaque_wrapped_key()
        })
        assert response.status_code == 409

    @pytest.mark.parametrize("field,value", [
        ("username", "a b"),
        ("public_key", "not base64!"),
        ("password", "short"),
    ])
    def test_register_validation(self, api, field, value):
        public_key, _ = generate_identity()
        payload = {
            "username": "alice",
            "password": "correctpw",
            "public_key": b64(public_key),
            "wrapped_key": opaque_wrapped_key()
        }
        payload[field] = value
        assert api.post("/identities", json=payload).status_code == 422

    def test_weak_wrapping_rejected(self, api):
        public_key, _ = generate_identity()
        wrapped = opaque_wrapped_key()
        wrapped["iterations"] = 1000
        response = api.post("/identities", json={
            "username": "alice",
            "password": "correctpw",
            "public_key": b64(public_key),
            "wrapped_key": wrapped
        })
        assert response.status_code == 422

    def test_session_returns_wrapped_key(self, api):
        _, public_key, wrapped = register(api, "alice")
        response = api.post("/sessions", json={"username": "alice", "password": "correctpw"})
        assert response.status_code == 200
        data = response.json()
        assert data["wrapped_key"] == wrapped
        assert data["public_key"] == b64(public_key)
        assert data["session_token"]

    def test_wrong_password(self, api):
        register(api, "alice")
        response = api.post("/sessions", json={"username": "alice", "password": "wrongpass"})
        assert response.status_code == 401
        response = api.post("/sessions", json={"username": "nobody", "password": "wrongpass"})
        assert response.status_code == 401

    def test_lookup_and_search(self, api):
        headers, public_key, _ = register(api, "alice")
        register(api, "albert")
        register(api, "bob")

        response = api.get("/identities/alice", headers=headers)
        assert response.status_code == 200
        assert response.json()["public_key"] == b64(public_key)
        assert "wrapped_key" not in response.json()
        assert api.get("/identities/nobody", headers=headers).status_code == 404

        users = api.get("/identities", params={"q": "al"}, headers=headers).json()["users"]
        assert [user["username"] for user in users] == ["albert", "alice"]
        assert api.get("/identities", params={"q": "a"}, headers=headers).json()["users"] == []

    def test_requires_token(self, api):
        register(api, "alice")
        assert api.get("/identities/alice").status_code == 401
        assert api.get("/messages", headers={"Authorization": "Bearer garbage"}).status_code == 401


class TestMessages:

    def test_send_and_receive(self, api):
        alice, _, _ = register(api, "alice")
        bob, _, _ = register(api, "bob")
        carol, _, _ = register(api, "carol")

        response = send(api, alice, "bob")
        assert response.status_code == 201
        ack = response.json()
        assert ack["id"]
        assert datetime.fromisoformat(ack["created_at"]).tzinfo is not None

        for headers in (alice, bob):
            messages = api.get("/messages", headers=headers).json()["messages"]
            assert [m["id"] for m in messages] == [ack["id"]]
            assert messages[0]["sender_username"] == "alice"
            assert messages[0]["recipient_username"] == "bob"
            assert base64.b64decode(messages[0]["ciphertext"]) == b"\x01" * 21
        assert api.get("/messages", headers=carol).json()["messages"] == []

    def test_unknown_recipient(self, api):
        alice, _, _ = register(api, "alice")
        assert send(api, alice, "nobody").status_code == 404

    def test_since_and_limit(self, api):
        alice, _, _ = register(api, "alice")
        register(api, "bob")
        acks = [send(api, alice, "bob").json() for _ in range(5)]

        messages = api.get("/messages", headers=alice).json()["messages"]
        stamps = [datetime.fromisoformat(m["created_at"]) for m in messages]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == 5

        newer = api.get("/messages", headers=alice, params={"since": acks[1]["created_at"]}).json()
        assert [m["id"] for m in newer["messages"]] == [ack["id"] for ack in acks[2:]]

        limited = api.get("/messages", headers=alice, params={"limit": 2}).json()
        assert [m["id"] for m in limited["messages"]] == [ack["id"] for ack in acks[:2]]
        assert api.get("/messages", headers=alice, params={"limit": 1000}).status_code == 422

    def test_latest_window(self, api):
        alice, _, _ = register(api, "alice")
        register(api, "bob")
        acks = [send(api, alice, "bob").json() for _ in range(5)]

        latest = api.get("/messages", headers=alice, params={"limit": 2, "latest": "true"}).json()
        assert [m["id"] for m in latest["messages"]] == [ack["id"] for ack in acks[3:]]

    def test_conversations(self, api):
        alice, _, _ = register(api, "alice")
        register(api, "bob")
        register(api, "carol")
        send(api, alice, "bob")
        send(api, alice, "carol")
        conversations = api.get("/conversations", headers=alice).json()["conversations"]
        assert [c["username"] for c in conversations] == ["bob", "carol"]


@pytest_asyncio.fixture
async def relay_app(server_config):
    app = create_app(server_config)
    await app.state.db.create_tables()
    yield app
    await app.state.db.dispose()


def make_client(app, tmp_path, name) -> ChatClient:
    transport = RelayTransport(client=httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://relay"
    ))
    config = ClientConfig(STATE_DIR=tmp_path / name, KDF_ITERATIONS=MIN_ITERATIONS)
    return ChatClient(config, transport=transport)


class TestChatClient:

    @pytest.mark.asyncio
    async def test_register_send_and_receive(self, relay_app, tmp_path):
        alice = make_client(relay_app, tmp_path, "alice")
        bob = make_client(relay_app, tmp_path, "bob")
        await alice.create_identity("alice", "correctpw")
        await bob.create_identity("bob", "correctpw")

        sent = await alice.send_message("bob", "hello")
        assert not sent.pending
        assert [m.plaintext for m in alice.get_timeline("bob")] == ["hello"]

        await bob.sync.open_conversation("alice", poll=False)
        assert await bob.sync.poll_once() == 1
        received = bob.get_timeline("alice")
        assert received[0].plaintext == "hello"
        assert received[0].id == sent.id

        await alice.aclose()
        await bob.aclose()

    @pytest.mark.asyncio
    async def test_duplicate_username(self, relay_app, tmp_path):
        first = make_client(relay_app, tmp_path, "first")
        second = make_client(relay_app, tmp_path, "second")
        await first.create_identity("alice", "correctpw")
        with pytest.raises(ConflictError):
            await second.create_identity("alice", "otherpassword")
        await first.aclose()
        await second.aclose()

    @pytest.mark.asyncio
    async def test_unlock_after_restart(self, relay_app, tmp_path):
        alice = make_client(relay_app, tmp_path, "alice")
        bob = make_client(relay_app, tmp_path, "bob")
        await alice.create_identity("alice", "correctpw")
        await bob.create_identity("bob", "correctpw")
        await alice.send_message("bob", "before restart")
        await alice.aclose()

        restarted = make_client(relay_app, tmp_path, "alice")
        assert restarted.username == "alice"
        assert not restarted.is_unlocked
        with pytest.raises(WrongPasswordError):
            await restarted.unlock_identity("wrongpassword")
        await restarted.unlock_identity("correctpw")
        assert restarted.is_unlocked

        await restarted.sync.open_conversation("bob", poll=False)
        await restarted.sync.poll_once()
        assert [m.plaintext for m in restarted.get_timeline("bob")] == ["before restart"]

        await restarted.aclose()
        await bob.aclose()

    @pytest.mark.asyncio
    async def test_login_again_stops_previous_engine(self, relay_app, tmp_path):
        alice = make_client(relay_app, tmp_path, "alice")
        await alice.create_identity("alice", "correctpw")
        previous = alice.sync
        previous.start()
        await asyncio.sleep(0)
        refresh = previous._refresh_task

        await alice.login("alice", "correctpw")
        assert refresh.done()
        assert alice.sync is not previous
        assert alice.sync._refresh_task is None
        await alice.aclose()

    @pytest.mark.asyncio
    async def test_logout_forgets_keys(self, relay_app, tmp_path):
        alice = make_client(relay_app, tmp_path, "alice")
        bob = make_client(relay_app, tmp_path, "bob")
        await alice.create_identity("alice", "correctpw")
        await bob.create_identity("bob", "correctpw")
        await alice.send_message("bob", "hi")
        assert len(alice.session_cache) == 1

        await alice.logout()
        assert len(alice.session_cache) == 0
        assert alice.get_timeline("bob") == []
        assert not alice.is_unlocked
        assert not alice.config.state_path.exists()

        await alice.aclose()
        await bob.aclose()

    @pytest.mark.asyncio
    async def test_send_to_unknown_peer(self, relay_app, tmp_path):
        alice = make_client(relay_app, tmp_path, "alice")
        await alice.create_identity("alice", "correctpw")
        with pytest.raises(NoKeyMaterialError):
            await alice.send_message("nobody", "hello?")
        assert alice.get_timeline("nobody") == []
        await alice.aclose()

    @pytest.mark.asyncio
    async def test_search_is_debounced(self, relay_app, tmp_path):
        alice = make_client(relay_app, tmp_path, "alice")
        await alice.create_identity("alice", "correctpw")
        alice._search.delay = 0.05

        first, second = await asyncio.gather(alice.search_users("al"), alice.search_users("ali"))
        assert first is None
        assert [user["username"] for user in second] == ["alice"]
        assert await alice.search_users("a") == []
        await alice.aclose()


class TestTokens:

    def test_round_trip(self):
        token = create_access_token({"sub": "alice"}, "secret")
        assert verify_token(token, "secret") == "alice"

    def test_wrong_secret_or_expired(self):
        token = create_access_token({"sub": "alice"}, "secret")
        assert verify_token(token, "other") is None
        expired = create_access_token({"sub": "alice"}, "secret", expires_delta=timedelta(seconds=-5))
        assert verify_token(expired, "secret") is None
        assert verify_token(create_access_token({}, "secret"), "secret") is None


class TestRelayTransport:

    @pytest.mark.asyncio
    async def test_identity_lookup_quotes_username_and_rejects_bad_key(self):
        requested = []

        def handler(request):
            requested.append(request.url.raw_path)
            return httpx.Response(200, json={"username": "a/b", "public_key": "!!not base64"})

        transport = RelayTransport(client=httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="http://relay"
        ))
        with pytest.raises(InvalidPeerKeyError):
            await transport.get_identity("a/b")
        assert requested == [b"/identities/a%2Fb"]
        await transport.aclose()
