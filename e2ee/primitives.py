"""
Cryptographic Primitives for End-to-End Encryption

Shared building blocks for the key vault, the key agreement and the message
cipher: curve parameters, point encoding, HKDF and base64 wire helpers.
"""

import base64
import hmac
from typing import Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import InvalidPeerKeyError

CURVE = ec.SECP256R1
KEY_LENGTH = 32  # AES-256
NONCE_LENGTH = 12
TAG_LENGTH = 16
SALT_LENGTH = 16


def serialize_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Serialize a P-256 public key to its uncompressed X9.62 point (65 bytes)"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint
    )


def deserialize_public_key(key_bytes: bytes) -> ec.EllipticCurvePublicKey:
    """
    Decode a raw encoded point into a P-256 public key.

    Raises:
        InvalidPeerKeyError: If the bytes are not a point on the curve
    """
    if not isinstance(key_bytes, (bytes, bytearray)) or not key_bytes:
        raise InvalidPeerKeyError("Public key is empty")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE(), bytes(key_bytes))
    except (ValueError, TypeError):
        raise InvalidPeerKeyError("Public key is not a valid P-256 point") from None


def hkdf_sha256(key_material: bytes, info: bytes, salt: Optional[bytes] = None,
                length: int = KEY_LENGTH) -> bytes:
    """
    Derive a fixed-length key with HKDF-SHA256.

    Args:
        key_material: Input key material
        info: Context label
        salt: Optional salt
        length: Output length in bytes

    Returns:
        Derived key bytes
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info
    )
    return hkdf.derive(key_material)


def b64encode(data: bytes) -> str:
    """Encode bytes as standard base64 text"""
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """
    Strictly decode standard base64 text.

    Raises:
        ValueError: If the input is not valid base64
    """
    try:
        return base64.b64decode(text, validate=True)
    except (ValueError, TypeError) as e:
        raise ValueError("Invalid base64 data") from e


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)
