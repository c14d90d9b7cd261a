"""
Shared-key derivation between two identities.

ECDH on P-256 followed by HKDF-SHA256. Both parties compute the same key
because the HKDF context orders the two public keys canonically.
"""

from cryptography.hazmat.primitives.asymmetric import ec

from .errors import InvalidPeerKeyError
from .keyvault import PrivateKeyHandle
from .primitives import KEY_LENGTH, constant_time_compare, deserialize_public_key, hkdf_sha256

AGREEMENT_LABEL = b"e2ee-messenger/conversation-key/v1"


class SharedKey:
    """Opaque 32-byte symmetric key for one pair of identities"""

    __slots__ = ("_key",)

    def __init__(self, key: bytes):
        if len(key) != KEY_LENGTH:
            raise ValueError("Shared key must be 32 bytes")
        self._key = bytes(key)

    def __eq__(self, other) -> bool:
        if not isinstance(other, SharedKey):
            return NotImplemented
        return constant_time_compare(self._key, other._key)

    def __hash__(self) -> int:
        return hash(self._key)

    def __repr__(self) -> str:
        return "<SharedKey AES-256>"

    def __reduce__(self):
        raise TypeError("SharedKey cannot be serialized")


def derive_shared_key(private_key: PrivateKeyHandle, peer_public_key: bytes) -> SharedKey:
    """
    Derive the conversation key for our identity and a peer's public key.

    Args:
        private_key: Our identity private key
        peer_public_key: Peer's encoded public point

    Returns:
        SharedKey equal to the one the peer derives with our public key

    Raises:
        InvalidPeerKeyError: If the peer key is not a valid curve point
    """
    peer_key = deserialize_public_key(peer_public_key)
    try:
        secret = private_key._key.exchange(ec.ECDH(), peer_key)
    except ValueError:
        raise InvalidPeerKeyError("Key agreement with peer key failed") from None

    low, high = sorted((private_key.public_key, bytes(peer_public_key)))
    return SharedKey(hkdf_sha256(secret, info=AGREEMENT_LABEL + low + high))
