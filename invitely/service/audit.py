from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from invitely.logging import get_logger
from invitely.service.clock import Clock, SystemClock

logger = get_logger(__name__)
audit_logger = get_logger("invitely.audit")

ACTION_REGISTER = "register"
ACTION_LOGIN = "login"
ACTION_LOGOUT = "logout"
ACTION_PASSWORD_RESET_REQUESTED = "password_reset_requested"
ACTION_PASSWORD_RESET_COMPLETED = "password_reset_completed"
ACTION_REUSE_DETECTED = "reuse_detected"
ACTION_EMAIL_VERIFIED = "email_verified"


@dataclass(frozen=True)
class AuditEntry:
    actor_id: Optional[str]
    action: str
    metadata: Dict[str, Any]
    occurred_at: datetime


class AuditSink(Protocol):
    def log(
        self, actor_id: Optional[str], action: str, metadata: Optional[Dict[str, Any]] = None
    ) -> None: ...


class QueueAuditSink:
    """Append-only security event emitter that never blocks the caller.

    Entries go onto a bounded queue drained by a daemon thread which writes
    them through structlog. When the queue is full the entry is dropped and a
    warning is logged; delivery is best-effort.
    """

    _STOP = object()

    def __init__(self, *, max_pending: int = 1000, clock: Optional[Clock] = None) -> None:
        self.clock: Clock = clock or SystemClock()
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_pending)
        self._worker = threading.Thread(
            target=self._drain, name="invitely-audit", daemon=True
        )
        self._worker.start()

    def log(
        self, actor_id: Optional[str], action: str, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        entry = AuditEntry(
            actor_id=actor_id,
            action=action,
            metadata=dict(metadata or {}),
            occurred_at=self.clock.now(),
        )
        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            logger.warning("audit_entry_dropped", action=action, actor_id=actor_id)

    def _drain(self) -> None:
        while True:
            entry = self._queue.get()
            try:
                if entry is self._STOP:
                    return
                audit_logger.info(
                    "audit",
                    actor_id=entry.actor_id,
                    action=entry.action,
                    occurred_at=entry.occurred_at.isoformat(),
                    **{f"meta_{k}": v for k, v in entry.metadata.items()},
                )
            except Exception as exc:
                logger.error("audit_write_failed", error=str(exc))
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued entry has been written."""
        self._queue.join()

    def close(self, timeout: float = 5.0) -> None:
        try:
            self._queue.put(self._STOP, timeout=timeout)
        except queue.Full:
            logger.warning("audit_close_queue_full")
            return
        self._worker.join(timeout=timeout)


@dataclass
class MemoryAuditSink:
    """Records entries in memory; for tests and local inspection."""

    clock: Clock = field(default_factory=SystemClock)
    entries: List[AuditEntry] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def log(
        self, actor_id: Optional[str], action: str, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        with self._lock:
            self.entries.append(
                AuditEntry(
                    actor_id=actor_id,
                    action=action,
                    metadata=dict(metadata or {}),
                    occurred_at=self.clock.now(),
                )
            )

    def actions(self, action: Optional[str] = None) -> List[AuditEntry]:
        with self._lock:
            if action is None:
                return list(self.entries)
            return [entry for entry in self.entries if entry.action == action]

    def flush(self) -> None:
        return None

    def close(self, timeout: float = 5.0) -> None:
        return None
