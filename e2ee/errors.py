"""
Error taxonomy for the end-to-end encryption core.

Underlying library failures are normalized to these types so callers cannot
tell tampering apart from a wrong password or a wrong key.
"""


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class KeyDerivationUnavailable(CryptoError):
    """The cryptographic backend cannot create identity keys (fatal)"""
    pass


class WrongPasswordError(CryptoError):
    """A wrapped private key could not be unwrapped with the given password"""

    def __init__(self, message: str = "Invalid password or corrupted key"):
        super().__init__(message)


class InvalidPeerKeyError(CryptoError):
    """A peer's public key does not decode to a valid point on the curve"""
    pass


class NoKeyMaterialError(CryptoError):
    """A peer has no resolvable public key, so no conversation key exists"""
    pass


class DecryptionError(CryptoError):
    """A message failed authentication or could not be decoded"""

    def __init__(self, message: str = "Decryption failed"):
        super().__init__(message)
