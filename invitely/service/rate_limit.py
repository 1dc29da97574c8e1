from __future__ import annotations

from typing import Optional

from invitely.config import RateLimitPolicy
from invitely.logging import get_logger
from invitely.service.clock import Clock, SystemClock
from invitely.service.deadline import Deadline
from invitely.storage.session_store import SessionStore, rate_key

logger = get_logger(__name__)


class RateLimiter:
    """Per-address sliding-window failure counter for one policy.

    Each window has a counter in the session store. The estimate for "now" is
    the current window's count plus the previous window's count weighted by
    the share of the previous window still inside the sliding span, so a
    burst at the edge of a window cannot double the allowance.
    """

    def __init__(
        self,
        name: str,
        policy: RateLimitPolicy,
        store: SessionStore,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        if policy.window_seconds <= 0 or policy.threshold <= 0:
            raise ValueError("rate limit window and threshold must be positive")
        self.name = name
        self.policy = policy
        self.store = store
        self.clock: Clock = clock or SystemClock()

    def _position(self) -> tuple[int, float]:
        now = self.clock.now().timestamp()
        window = self.policy.window_seconds
        index = int(now // window)
        elapsed_fraction = (now - index * window) / window
        return index, elapsed_fraction

    async def _estimate(self, ip: str, deadline: Optional[Deadline]) -> float:
        index, elapsed_fraction = self._position()
        current = await self.store.get(rate_key(self.name, ip, index), deadline=deadline)
        previous = await self.store.get(
            rate_key(self.name, ip, index - 1), deadline=deadline
        )
        return int(current or 0) + int(previous or 0) * (1.0 - elapsed_fraction)

    async def allow(self, ip: str, *, deadline: Optional[Deadline] = None) -> bool:
        estimate = await self._estimate(ip, deadline)
        allowed = estimate < self.policy.threshold
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                policy=self.name,
                client_ip=ip,
                estimate=round(estimate, 2),
                threshold=self.policy.threshold,
            )
        return allowed

    async def record_failure(self, ip: str, *, deadline: Optional[Deadline] = None) -> int:
        index, _ = self._position()
        # Kept for two windows so it can still weigh in as "previous"
        return await self.store.incr(
            rate_key(self.name, ip, index),
            2 * self.policy.window_seconds,
            deadline=deadline,
        )
