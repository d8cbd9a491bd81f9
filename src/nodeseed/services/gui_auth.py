"""GUI password hashing using argon2id."""

from __future__ import annotations

import logging

from argon2 import PasswordHasher
from argon2.exceptions import HashingError as Argon2HashingError
from argon2.exceptions import InvalidHashError, VerificationError

from ..errors import HashingError

logger = logging.getLogger(__name__)

_hasher = PasswordHasher()

HASH_PREFIX = "$argon2"


def is_password_hash(value: str) -> bool:
    """True if ``value`` looks like a stored hash rather than plaintext."""
    return value.startswith(HASH_PREFIX)


def hash_password(password: str) -> str:
    """Hash a GUI password with argon2id. Raises ``HashingError`` on failure."""
    try:
        return _hasher.hash(password)
    except Argon2HashingError as e:
        raise HashingError(f"failed to set GUI authentication password: {e}") from e


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against an argon2id hash. Returns False on mismatch or a malformed hash."""
    if not is_password_hash(password_hash):
        return False
    try:
        return _hasher.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def needs_rehash(password_hash: str) -> bool:
    """Check if a hash was made with weaker parameters than the current hasher."""
    return _hasher.check_needs_rehash(password_hash)
