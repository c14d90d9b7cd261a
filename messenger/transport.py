"""
HTTP transport to the relay server.

The relay only ever sees public keys, wrapped private keys and ciphertext.
All failures are mapped onto the TransportError family so the sync engine
can treat them uniformly.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional
from urllib.parse import quote

import httpx

from e2ee.errors import InvalidPeerKeyError
from e2ee.keyvault import WrappedKeyBlob
from e2ee.primitives import b64decode, b64encode

from .timeline import Envelope, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Relay unreachable or returned an unexpected response"""
    pass


class ConflictError(TransportError):
    """The username is already registered"""
    pass


class AuthenticationError(TransportError):
    """Credentials or session token were rejected"""
    pass


class IdentityNotFoundError(TransportError):
    """No identity is published under the requested username"""
    pass


class RelayTransport:
    """
    Async client for the relay's REST API.
    """

    def __init__(self, server_url: str = "http://localhost:8000", timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        """
        Initialize the transport.

        Args:
            server_url: Base URL of the relay
            timeout: Per-request timeout in seconds
            client: Preconfigured httpx client (tests inject one)
        """
        self.server_url = server_url.rstrip("/")
        self.token: Optional[str] = None
        self.http_client = client or httpx.AsyncClient(base_url=self.server_url, timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http_client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {type(e).__name__}") from e

        if response.status_code == 401:
            raise AuthenticationError(self._detail(response, "Not authenticated"))
        if response.status_code == 409:
            raise ConflictError(self._detail(response, "Conflict"))
        if response.status_code == 404:
            raise IdentityNotFoundError(self._detail(response, "Not found"))
        if response.status_code >= 400:
            raise TransportError(f"{method} {path} returned {response.status_code}: "
                                 f"{self._detail(response, 'error')}")
        return response

    @staticmethod
    def _detail(response: httpx.Response, default: str) -> str:
        try:
            return response.json().get("detail", default)
        except ValueError:
            return default

    @staticmethod
    def _json(response: httpx.Response):
        try:
            return response.json()
        except ValueError as e:
            raise TransportError("Relay returned invalid JSON") from e

    async def create_identity(self, username: str, password: str, public_key: bytes,
                              wrapped_key: WrappedKeyBlob) -> Dict:
        """
        Publish a new identity.

        Raises:
            ConflictError: If the username is taken
        """
        response = await self._request("POST", "/identities", json={
            "username": username,
            "password": password,
            "public_key": b64encode(public_key),
            "wrapped_key": wrapped_key.to_dict()
        })
        data = self._json(response)
        self.token = data.get("session_token")
        return data

    async def create_session(self, username: str, password: str) -> Dict:
        """
        Authenticate and fetch the wrapped private key.

        Returns:
            Dictionary with username, public_key (bytes), wrapped_key
            (WrappedKeyBlob dict) and session_token

        Raises:
            AuthenticationError: If the relay rejects the credentials
        """
        response = await self._request("POST", "/sessions", json={
            "username": username,
            "password": password
        })
        data = self._json(response)
        try:
            session = {
                "username": data["username"],
                "public_key": b64decode(data["public_key"]),
                "wrapped_key": data["wrapped_key"],
                "session_token": data["session_token"]
            }
        except (KeyError, ValueError) as e:
            raise TransportError("Malformed session response") from e
        self.token = session["session_token"]
        return session

    async def end_session(self):
        """Mark the session offline on the relay; failures are only logged"""
        try:
            await self._request("DELETE", "/sessions")
        except TransportError as e:
            logger.info("Ending session on relay failed: %s", e)
        finally:
            self.token = None

    async def post_message(self, recipient: str, ciphertext: bytes, iv: bytes,
                           tag: Optional[bytes] = None) -> Dict:
        """
        Submit an envelope.

        Returns:
            Dictionary with the relay-assigned ``id`` and ``created_at`` (datetime)
        """
        payload = {
            "recipient_username": recipient,
            "ciphertext": b64encode(ciphertext),
            "iv": b64encode(iv)
        }
        if tag:
            payload["tag"] = b64encode(tag)

        data = self._json(await self._request("POST", "/messages", json=payload))
        try:
            return {"id": str(data["id"]), "created_at": parse_timestamp(data["created_at"])}
        except (KeyError, ValueError) as e:
            raise TransportError("Malformed send acknowledgement") from e

    async def fetch_messages(self, since: Optional[datetime] = None, limit: int = 100,
                             latest: bool = False) -> List[Envelope]:
        """
        Fetch envelopes newer than ``since``, oldest first.

        With ``latest`` the relay returns its newest ``limit`` envelopes
        rather than the oldest.

        Malformed records are skipped with a warning.
        """
        params = {"limit": limit}
        if since is not None:
            params["since"] = format_timestamp(since)
        if latest:
            params["latest"] = "true"

        data = self._json(await self._request("GET", "/messages", params=params))
        envelopes = []
        for record in data.get("messages", []):
            try:
                envelopes.append(Envelope.from_dict(record))
            except ValueError as e:
                logger.warning("Skipping malformed envelope: %s", e)
        return envelopes

    async def get_identity(self, username: str) -> Dict:
        """
        Look up a published identity.

        Returns:
            Dictionary with username and public_key (bytes, empty if unpublished)

        Raises:
            IdentityNotFoundError: If the user does not exist
            InvalidPeerKeyError: If the published key is not valid base64
        """
        data = self._json(await self._request("GET", f"/identities/{quote(username, safe='')}"))
        public_key = data.get("public_key")
        try:
            public_key = b64decode(public_key) if public_key else b""
        except ValueError:
            raise InvalidPeerKeyError(f"{username} published an undecodable key") from None
        return {
            "username": data.get("username", username),
            "display_name": data.get("display_name"),
            "public_key": public_key
        }

    async def search_identities(self, query: str) -> List[Dict]:
        data = self._json(await self._request("GET", "/identities", params={"q": query}))
        return data.get("users", [])

    async def list_conversations(self) -> List[Dict]:
        data = self._json(await self._request("GET", "/conversations"))
        return data.get("conversations", [])

    async def aclose(self):
        await self.http_client.aclose()
