"""Hashing and token primitives shared by the auth flows."""

from __future__ import annotations

import hashlib
import hmac
import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from invitely.logging import get_logger

logger = get_logger(__name__)

SECURE_TOKEN_BYTES = 32


class PasswordHashing:
    """argon2id hashing with deployment-tunable cost.

    ``work_factor`` is argon2's time cost. Pick values that take at least
    100 ms on production hardware; tests lower the memory cost.
    """

    def __init__(
        self, work_factor: int = 3, *, memory_cost: int = 64 * 1024, parallelism: int = 4
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=work_factor,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True


def generate_secure_token() -> str:
    """32 bytes from the OS CSPRNG, hex-encoded (64 chars)."""
    return secrets.token_hex(SECURE_TOKEN_BYTES)


def hash_token(token: str) -> str:
    """SHA-256 hex digest used as the storage key for one-shot tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def device_fingerprint(device_info: str, user_agent: str) -> str:
    return hashlib.sha256(f"{device_info}{user_agent}".encode("utf-8")).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
