from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "ADMIN"
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"


@dataclass
class Principal:
    """A user directory entry; both ``username`` and ``email`` are unique aliases."""

    id: str
    username: str
    email: str
    password_hash: str
    full_name: str
    role: Role = Role.STUDENT
    enabled: bool = True
    email_verified: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        password_hash: str,
        full_name: str,
        *,
        role: Role = Role.STUDENT,
        enabled: bool = True,
        email_verified: bool = False,
    ) -> "Principal":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=password_hash,
            full_name=full_name,
            role=Role(role),
            enabled=enabled,
            email_verified=email_verified,
        )


@dataclass
class RefreshToken:
    id: str
    principal_id: str
    token: str
    expiry_date: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls, principal_id: str, token: str, ttl_days: int, *, now: Optional[datetime] = None
    ) -> "RefreshToken":
        issued = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            principal_id=principal_id,
            token=token,
            expiry_date=issued + timedelta(days=ttl_days),
            created_at=issued,
        )

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and now < self.expiry_date


@dataclass
class AuditEvent:
    id: str
    action: str
    actor_id: Optional[str] = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
