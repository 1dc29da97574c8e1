from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class UserStatus(str, Enum):
    UNVERIFIED = "unverified"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    name: str = ""
    status: UserStatus = UserStatus.UNVERIFIED
    role: str = UserRole.USER.value
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        name: str = "",
        role: str = UserRole.USER.value,
        status: UserStatus = UserStatus.UNVERIFIED,
        now: datetime | None = None,
    ) -> "User":
        created = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            name=name,
            status=status,
            role=role,
            created_at=created,
            updated_at=created,
        )

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def view(self) -> dict:
        """Public projection returned to the account owner."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }
