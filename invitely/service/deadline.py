from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Optional, TypeVar

from invitely.service.errors import DeadlineExceededError

T = TypeVar("T")


@dataclass(frozen=True)
class Deadline:
    """Absolute point on the monotonic clock by which a flow must finish.

    Flows hand the same instance to every session store and user repository
    call so a slow dependency cannot stretch a request past its budget.
    """

    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        return self.expires_at - time.monotonic()

    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self) -> None:
        if self.expired():
            raise DeadlineExceededError("deadline exceeded")


def check_deadline(deadline: Optional[Deadline]) -> None:
    if deadline is not None:
        deadline.check()


async def within(awaitable: Awaitable[T], deadline: Optional[Deadline]) -> T:
    """Await ``awaitable`` bounded by ``deadline`` (unbounded when None)."""
    if deadline is None:
        return await awaitable
    remaining = deadline.remaining()
    if remaining <= 0:
        # Close the coroutine so it does not warn about never being awaited
        close = getattr(awaitable, "close", None)
        if close is not None:
            close()
        raise DeadlineExceededError("deadline exceeded")
    try:
        return await asyncio.wait_for(awaitable, timeout=remaining)
    except asyncio.TimeoutError as exc:
        raise DeadlineExceededError("deadline exceeded") from exc
