"""Password hashing and strength policy.

Hashes are stored tagged with their algorithm (``bcrypt$<bcrypt output>``)
so a future algorithm can be introduced while old hashes stay verifiable.
bcrypt is CPU-bound, so both hashing and verification run in a worker
thread to keep the event loop responsive.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

import bcrypt

from config import get_settings
from services.errors import MalformedHash, UnsupportedAlgorithm

logger = logging.getLogger(__name__)

ALGORITHM_BCRYPT = "bcrypt"
HASH_SEPARATOR = "$"

PASSWORD_MIN_LENGTH = 12
PASSWORD_SPECIAL_CHARS = "!@#$%^&*()-_+=?.,:;<>/"

# bcrypt only looks at the first 72 bytes; newer releases raise instead of truncating
_BCRYPT_MAX_BYTES = 72


@dataclass
class PasswordStrengthResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def validate_password_strength(password: str) -> PasswordStrengthResult:
    """Check every rule and report all violations at once."""
    errors = []

    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not any(c in PASSWORD_SPECIAL_CHARS for c in password):
        errors.append(
            f"Password must contain at least one special character ({PASSWORD_SPECIAL_CHARS})"
        )

    return PasswordStrengthResult(valid=not errors, errors=errors)


def parse_hash(tagged_hash: str) -> tuple[str, str]:
    """
    Split a tagged hash into (algorithm, payload).

    Only the first separator counts: bcrypt output itself contains ``$``.
    """
    if not tagged_hash or HASH_SEPARATOR not in tagged_hash:
        raise MalformedHash()

    algorithm, payload = tagged_hash.split(HASH_SEPARATOR, 1)
    if not algorithm or not payload:
        raise MalformedHash()
    return algorithm, payload


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


class PasswordHasher:
    def __init__(self, rounds: Optional[int] = None):
        self.rounds = rounds or get_settings().BCRYPT_ROUNDS
        self._dummy_hash: Optional[bytes] = None

    def _hash_sync(self, password: str) -> str:
        hashed = bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=self.rounds))
        return f"{ALGORITHM_BCRYPT}{HASH_SEPARATOR}{hashed.decode('utf-8')}"

    def _verify_sync(self, password: str, tagged_hash: str) -> bool:
        algorithm, payload = parse_hash(tagged_hash)
        if algorithm != ALGORITHM_BCRYPT:
            raise UnsupportedAlgorithm(algorithm)
        try:
            return bcrypt.checkpw(_encode(password), payload.encode("utf-8"))
        except ValueError as exc:
            # bcrypt rejects payloads that are not a valid bcrypt string
            raise MalformedHash(f"Invalid bcrypt payload: {exc}") from exc

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self._hash_sync, password)

    async def verify(self, password: str, tagged_hash: str) -> bool:
        """
        Check a password against a tagged hash.

        Returns False on a wrong password. Raises MalformedHash or
        UnsupportedAlgorithm when the stored hash itself is unusable.
        """
        return await asyncio.to_thread(self._verify_sync, password, tagged_hash)

    async def verify_dummy(self, password: str) -> None:
        """
        Burn one bcrypt check so unknown accounts take as long as known ones.
        """
        if self._dummy_hash is None:
            self._dummy_hash = await asyncio.to_thread(
                bcrypt.hashpw, b"dummy-password-for-timing", bcrypt.gensalt(rounds=self.rounds)
            )
        await asyncio.to_thread(bcrypt.checkpw, _encode(password), self._dummy_hash)
