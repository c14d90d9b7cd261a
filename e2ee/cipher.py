"""
Message cipher: AES-256-GCM under a conversation key.
"""

import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .agreement import SharedKey
from .errors import DecryptionError
from .primitives import NONCE_LENGTH, TAG_LENGTH


@dataclass(frozen=True)
class EncryptedPayload:
    """
    Output of one encryption.

    Attributes:
        ciphertext: Encrypted message with the 16-byte tag appended
        iv: 12-byte nonce, unique per call
    """
    ciphertext: bytes
    iv: bytes


def encrypt(plaintext: str, key: SharedKey, associated_data: bytes = b"") -> EncryptedPayload:
    """
    Encrypt a message using AES-256-GCM.

    Args:
        plaintext: UTF-8 text of any length
        key: Conversation key
        associated_data: Additional authenticated data

    Returns:
        EncryptedPayload with a fresh random nonce
    """
    iv = os.urandom(NONCE_LENGTH)
    ciphertext = AESGCM(key._key).encrypt(iv, plaintext.encode("utf-8"), associated_data)
    return EncryptedPayload(ciphertext=ciphertext, iv=iv)


def decrypt(ciphertext: bytes, iv: bytes, key: SharedKey, associated_data: bytes = b"",
            tag: Optional[bytes] = None) -> str:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        ciphertext: Encrypted message, tag appended unless ``tag`` is given
        iv: 12-byte nonce used for encryption
        key: Conversation key
        associated_data: Additional authenticated data
        tag: Detached authentication tag, if the sender sent one

    Returns:
        Decrypted plaintext

    Raises:
        DecryptionError: If authentication or decoding fails
    """
    if tag:
        ciphertext = ciphertext + tag
    if len(iv) != NONCE_LENGTH or len(ciphertext) < TAG_LENGTH:
        raise DecryptionError()

    try:
        plaintext = AESGCM(key._key).decrypt(iv, ciphertext, associated_data)
        return plaintext.decode("utf-8")
    except (InvalidTag, UnicodeDecodeError, ValueError):
        raise DecryptionError() from None
