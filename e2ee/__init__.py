"""
Cryptographic core for end-to-end encrypted messaging.

Implements:
- KeyVault: P-256 identity keys and password wrapping (PBKDF2 + AES-GCM)
- SecretDeriver: ECDH + HKDF conversation keys
- CipherEngine: AES-256-GCM message encryption
"""

from .agreement import SharedKey, derive_shared_key
from .cipher import EncryptedPayload, decrypt, encrypt
from .errors import (
    CryptoError,
    DecryptionError,
    InvalidPeerKeyError,
    KeyDerivationUnavailable,
    NoKeyMaterialError,
    WrongPasswordError,
)
from .keyvault import (
    PrivateKeyHandle,
    WrappedKeyBlob,
    generate_identity,
    unwrap_private_key,
    wrap_private_key,
)

__all__ = [
    'SharedKey',
    'derive_shared_key',
    'EncryptedPayload',
    'encrypt',
    'decrypt',
    'CryptoError',
    'DecryptionError',
    'InvalidPeerKeyError',
    'KeyDerivationUnavailable',
    'NoKeyMaterialError',
    'WrongPasswordError',
    'PrivateKeyHandle',
    'WrappedKeyBlob',
    'generate_identity',
    'unwrap_private_key',
    'wrap_private_key',
]
