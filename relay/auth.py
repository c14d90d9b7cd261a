"""
Authentication module for bearer token management.

Issues and verifies the session tokens returned by POST /sessions.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt


def create_access_token(data: dict, secret_key: str, algorithm: str = "HS256",
                        expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Data to encode in the token
        secret_key: Signing key
        algorithm: JWT signing algorithm
        expires_delta: Token expiration time

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=24))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret_key, algorithm=algorithm)


def verify_token(token: str, secret_key: str, algorithm: str = "HS256") -> Optional[str]:
    """
    Verify a JWT token and extract username.

    Args:
        token: JWT token to verify
        secret_key: Signing key
        algorithm: Expected signing algorithm

    Returns:
        Username if valid, None otherwise
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[algorithm])
        username: str = payload.get("sub")
        if username is None:
            return None
        return username
    except JWTError:
        return None
