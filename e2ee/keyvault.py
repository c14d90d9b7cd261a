"""
Identity Key Vault

Generates the long-term P-256 identity keypair and wraps the private key
under a password-derived key. The wrapped blob is the only form in which a
private key ever leaves device memory.
"""

import logging
import os
import struct
from dataclasses import dataclass
from typing import Dict, Tuple

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import KeyDerivationUnavailable, WrongPasswordError
from .primitives import (
    CURVE,
    KEY_LENGTH,
    NONCE_LENGTH,
    SALT_LENGTH,
    b64decode,
    b64encode,
    constant_time_compare,
    serialize_public_key,
)

logger = logging.getLogger(__name__)

MIN_ITERATIONS = 100_000
DEFAULT_ITERATIONS = 600_000
WRAP_LABEL = b"e2ee-messenger/identity-key/v1"


class PrivateKeyHandle:
    """
    Opaque holder for an identity private key.

    The key object is only reachable from inside the ``e2ee`` package; the
    handle cannot be pickled and its repr never shows key material.
    """

    __slots__ = ("_key", "_public_bytes")

    def __init__(self, key: ec.EllipticCurvePrivateKey):
        self._key = key
        self._public_bytes = serialize_public_key(key.public_key())

    @property
    def public_key(self) -> bytes:
        """Encoded public point matching this private key"""
        return self._public_bytes

    def __eq__(self, other) -> bool:
        if not isinstance(other, PrivateKeyHandle):
            return NotImplemented
        return constant_time_compare(
            self._key.private_numbers().private_value.to_bytes(32, "big"),
            other._key.private_numbers().private_value.to_bytes(32, "big"),
        )

    def __hash__(self) -> int:
        return hash(self._public_bytes)

    def __repr__(self) -> str:
        return "<PrivateKeyHandle P-256>"

    def __reduce__(self):
        raise TypeError("PrivateKeyHandle cannot be serialized; wrap it instead")


@dataclass(frozen=True)
class WrappedKeyBlob:
    """
    Password-wrapped private key as stored on the relay.

    Attributes:
        salt: Per-identity PBKDF2 salt
        iv: 12-byte AES-GCM nonce
        ciphertext: Encrypted PKCS#8 private key with the GCM tag appended
        iterations: PBKDF2 work factor used for this blob
    """
    salt: bytes
    iv: bytes
    ciphertext: bytes
    iterations: int

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            'salt': b64encode(self.salt),
            'iv': b64encode(self.iv),
            'ciphertext': b64encode(self.ciphertext),
            'iterations': self.iterations
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'WrappedKeyBlob':
        """Create from dictionary"""
        return cls(
            salt=b64decode(data['salt']),
            iv=b64decode(data['iv']),
            ciphertext=b64decode(data['ciphertext']),
            iterations=int(data['iterations'])
        )


def generate_identity() -> Tuple[bytes, PrivateKeyHandle]:
    """
    Generate a fresh P-256 identity keypair for key agreement.

    Returns:
        Tuple of (encoded public key, private key handle)

    Raises:
        KeyDerivationUnavailable: If the backend cannot provide the curve
    """
    try:
        private_key = ec.generate_private_key(CURVE())
    except (UnsupportedAlgorithm, ValueError) as e:
        logger.critical("Elliptic-curve backend unavailable: %s", type(e).__name__)
        raise KeyDerivationUnavailable("No elliptic-curve backend available") from None

    handle = PrivateKeyHandle(private_key)
    return handle.public_key, handle


def _derive_wrapping_key(password: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def _associated_data(salt: bytes, iterations: int) -> bytes:
    # Binds the KDF parameters to the ciphertext.
    return WRAP_LABEL + salt + struct.pack(">I", iterations)


def wrap_private_key(handle: PrivateKeyHandle, password: str,
                     iterations: int = DEFAULT_ITERATIONS) -> WrappedKeyBlob:
    """
    Encrypt a private key under a key derived from ``password``.

    A fresh random salt and nonce are generated for every call.

    Args:
        handle: Private key to wrap
        password: User's password
        iterations: PBKDF2 iteration count (at least MIN_ITERATIONS)

    Returns:
        WrappedKeyBlob safe to persist server-side
    """
    if iterations < MIN_ITERATIONS:
        raise ValueError(f"iterations must be at least {MIN_ITERATIONS}")

    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(NONCE_LENGTH)
    wrapping_key = _derive_wrapping_key(password, salt, iterations)

    key_material = handle._key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )
    ciphertext = AESGCM(wrapping_key).encrypt(iv, key_material, _associated_data(salt, iterations))

    return WrappedKeyBlob(salt=salt, iv=iv, ciphertext=ciphertext, iterations=iterations)


def unwrap_private_key(blob, password: str) -> PrivateKeyHandle:
    """
    Recover a private key from its wrapped form.

    Args:
        blob: WrappedKeyBlob or its dictionary form
        password: User's password

    Returns:
        PrivateKeyHandle for the unwrapped key

    Raises:
        WrongPasswordError: On a wrong password or any malformed blob
    """
    try:
        if not isinstance(blob, WrappedKeyBlob):
            blob = WrappedKeyBlob.from_dict(blob)
        if blob.iterations < MIN_ITERATIONS or len(blob.iv) != NONCE_LENGTH:
            raise ValueError("Unsupported blob parameters")

        wrapping_key = _derive_wrapping_key(password, blob.salt, blob.iterations)
        key_material = AESGCM(wrapping_key).decrypt(
            blob.iv, blob.ciphertext, _associated_data(blob.salt, blob.iterations)
        )
        private_key = serialization.load_der_private_key(key_material, password=None)
        if not isinstance(private_key, ec.EllipticCurvePrivateKey) \
                or not isinstance(private_key.curve, CURVE):
            raise ValueError("Unexpected key type")
    except (InvalidTag, ValueError, TypeError, KeyError, UnsupportedAlgorithm):
        raise WrongPasswordError() from None

    return PrivateKeyHandle(private_key)
