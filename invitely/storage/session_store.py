"""Session store contract and key namespaces.

Values are plain strings. Keys are colon-separated:

- ``refresh:<user_id>:<refresh_jti>`` -> device id (session record)
- ``blacklist:access:<access_jti>`` -> "1"
- ``blacklist:refresh`` -> set of rotated or revoked refresh jtis
- ``password_reset:<sha256(token)>`` -> user id
- ``rate:<policy>:<ip>:<window>`` -> failure counter
"""

from __future__ import annotations

from typing import AsyncIterator, Optional, Protocol

from invitely.service.deadline import Deadline

REFRESH_DENYLIST_KEY = "blacklist:refresh"


def refresh_key(user_id: str, jti: str) -> str:
    return f"refresh:{user_id}:{jti}"


def refresh_prefix(user_id: str) -> str:
    return f"refresh:{user_id}:"


def access_denylist_key(jti: str) -> str:
    return f"blacklist:access:{jti}"


def password_reset_key(token_hash: str) -> str:
    return f"password_reset:{token_hash}"


def rate_key(policy: str, ip: str, window_index: int) -> str:
    return f"rate:{policy}:{ip}:{window_index}"


class SessionStore(Protocol):
    async def put(
        self, key: str, value: str, ttl: int, *, deadline: Optional[Deadline] = None
    ) -> None: ...

    async def get(
        self, key: str, *, deadline: Optional[Deadline] = None
    ) -> Optional[str]: ...

    async def delete(self, *keys: str, deadline: Optional[Deadline] = None) -> int: ...

    async def set_add(
        self, set_key: str, member: str, *, deadline: Optional[Deadline] = None
    ) -> None: ...

    async def set_has(
        self, set_key: str, member: str, *, deadline: Optional[Deadline] = None
    ) -> bool: ...

    async def expire(
        self, key: str, ttl: int, *, deadline: Optional[Deadline] = None
    ) -> None: ...

    def scan(
        self, prefix: str, *, deadline: Optional[Deadline] = None
    ) -> AsyncIterator[str]: ...

    async def ttl(
        self, key: str, *, deadline: Optional[Deadline] = None
    ) -> Optional[int]: ...

    async def incr(
        self, key: str, ttl: int, *, deadline: Optional[Deadline] = None
    ) -> int: ...

    async def rotate(
        self,
        *,
        denylist_key: str,
        old_member: str,
        denylist_ttl: int,
        old_key: str,
        new_key: str,
        new_value: str,
        ttl: int,
        deadline: Optional[Deadline] = None,
    ) -> bool:
        """Denylist the old jti and swap session records in one step.

        Returns False, writing nothing, when ``old_key`` is already gone.
        """
        ...

    async def ping(self, *, deadline: Optional[Deadline] = None) -> bool: ...

    async def close(self) -> None: ...
