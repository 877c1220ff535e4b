"""
Password hashing for protected links.

bcrypt only looks at the first 72 bytes of a password; longer input is cut
there explicitly so hashing and checking always agree.
"""

from typing import Optional

import bcrypt

BCRYPT_MAX_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=rounds)).decode("ascii")


def verify_password(password: Optional[str], password_hash: str) -> bool:
    """False for a missing password or an unreadable hash."""
    if not password:
        return False
    try:
        return bcrypt.checkpw(_encode(password), password_hash.encode("ascii"))
    except ValueError:
        return False
