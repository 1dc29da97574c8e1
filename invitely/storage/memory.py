from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, Optional, Set, Union

from invitely.logging import get_logger
from invitely.service.clock import Clock, SystemClock
from invitely.service.deadline import Deadline, check_deadline
from invitely.storage.errors import ConstraintViolation
from invitely.storage.models import User, UserStatus


@dataclass
class _Entry:
    value: Union[str, Set[str]]
    expires_at: Optional[datetime] = None


class MemorySessionStore:
    """In-process session store used when Redis is unavailable (tests, dev).

    Expiry follows the injected clock so tests can move time forward instead
    of sleeping.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock: Clock = clock or SystemClock()
        self._entries: Dict[str, _Entry] = {}
        # No awaits happen while the lock is held
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self.clock.now():
            self._entries.pop(key, None)
            return None
        return entry

    def _expiry(self, ttl: int) -> datetime:
        return self.clock.now() + timedelta(seconds=max(1, int(ttl)))

    async def put(
        self, key: str, value: str, ttl: int, *, deadline: Optional[Deadline] = None
    ) -> None:
        check_deadline(deadline)
        with self._lock:
            self._entries[key] = _Entry(value=str(value), expires_at=self._expiry(ttl))

    async def get(self, key: str, *, deadline: Optional[Deadline] = None) -> Optional[str]:
        check_deadline(deadline)
        with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, str):
                return None
            return entry.value

    async def delete(self, *keys: str, deadline: Optional[Deadline] = None) -> int:
        check_deadline(deadline)
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    self._entries.pop(key, None)
                    removed += 1
        return removed

    async def set_add(
        self, set_key: str, member: str, *, deadline: Optional[Deadline] = None
    ) -> None:
        check_deadline(deadline)
        with self._lock:
            self._set_add_locked(set_key, member)

    def _set_add_locked(self, set_key: str, member: str) -> None:
        entry = self._live(set_key)
        if entry is None or not isinstance(entry.value, set):
            entry = _Entry(value=set())
            self._entries[set_key] = entry
        entry.value.add(member)

    async def set_has(
        self, set_key: str, member: str, *, deadline: Optional[Deadline] = None
    ) -> bool:
        check_deadline(deadline)
        with self._lock:
            entry = self._live(set_key)
            return bool(entry and isinstance(entry.value, set) and member in entry.value)

    async def expire(
        self, key: str, ttl: int, *, deadline: Optional[Deadline] = None
    ) -> None:
        check_deadline(deadline)
        with self._lock:
            entry = self._live(key)
            if entry is not None:
                entry.expires_at = self._expiry(ttl)

    async def ttl(self, key: str, *, deadline: Optional[Deadline] = None) -> Optional[int]:
        check_deadline(deadline)
        with self._lock:
            entry = self._live(key)
            if entry is None or entry.expires_at is None:
                return None
            return math.ceil((entry.expires_at - self.clock.now()).total_seconds())

    async def incr(self, key: str, ttl: int, *, deadline: Optional[Deadline] = None) -> int:
        check_deadline(deadline)
        with self._lock:
            entry = self._live(key)
            count = int(entry.value) + 1 if entry and isinstance(entry.value, str) else 1
            self._entries[key] = _Entry(value=str(count), expires_at=self._expiry(ttl))
            return count

    async def scan(
        self, prefix: str, *, deadline: Optional[Deadline] = None
    ) -> AsyncIterator[str]:
        with self._lock:
            snapshot = [key for key in self._entries if key.startswith(prefix)]
        for key in snapshot:
            check_deadline(deadline)
            with self._lock:
                live = self._live(key) is not None
            if live:
                yield key

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
        check_deadline(deadline)
        with self._lock:
            if self._live(old_key) is None:
                return False
            self._entries.pop(old_key, None)
            self._set_add_locked(denylist_key, old_member)
            self._entries[denylist_key].expires_at = self._expiry(denylist_ttl)
            self._entries[new_key] = _Entry(value=str(new_value), expires_at=self._expiry(ttl))
            return True

    async def ping(self, *, deadline: Optional[Deadline] = None) -> bool:
        check_deadline(deadline)
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()


class MemoryUserRepository:
    """Thread-safe in-memory user repository keyed by id, unique on email."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.logger = get_logger(__name__)
        self.clock: Clock = clock or SystemClock()
        self.users: Dict[str, User] = {}
        self._by_email: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    def find_by_email(
        self, email: str, *, deadline: Optional[Deadline] = None
    ) -> Optional[User]:
        check_deadline(deadline)
        with self._data_lock:
            user_id = self._by_email.get(email.casefold())
            return self.users.get(user_id) if user_id else None

    def find_by_id(
        self, user_id: str, *, deadline: Optional[Deadline] = None
    ) -> Optional[User]:
        check_deadline(deadline)
        with self._data_lock:
            return self.users.get(user_id)

    def insert(self, user: User, *, deadline: Optional[Deadline] = None) -> User:
        check_deadline(deadline)
        email_key = user.email.casefold()
        with self._data_lock:
            if email_key in self._by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user.id] = user
            self._by_email[email_key] = user.id
        return user

    def update_password_hash(
        self, user_id: str, password_hash: str, *, deadline: Optional[Deadline] = None
    ) -> Optional[User]:
        check_deadline(deadline)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.updated_at = self.clock.now()
            return user

    def update_status(
        self, user_id: str, status: UserStatus, *, deadline: Optional[Deadline] = None
    ) -> Optional[User]:
        check_deadline(deadline)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            user.updated_at = self.clock.now()
            self.logger.info("user_status_updated", user_id=user_id, status=user.status.value)
            return user
