from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus:
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    image_url: Optional[str] = None
    status: str = UserStatus.ACTIVE
    email_verified: bool = False
    role_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token: str
    created_at: datetime
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    login_type: str = "email"
    active: bool = True
    last_activity_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        *,
        session_id: str | None = None,
        ttl: timedelta = timedelta(days=7),
        device_info: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        login_type: str = "email",
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            created_at=now,
            expires_at=now + ttl,
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
            login_type=login_type,
            active=True,
            last_activity_at=now,
            updated_at=now,
        )

    def is_live(self, now: datetime) -> bool:
        return self.active and self.expires_at > now


@dataclass
class SessionWithUser:
    session: Session
    user: User


@dataclass
class LoginHistoryEntry:
    email: str
    success: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SessionStats:
    total: int
    active: int
    expired: int
    login_types: Dict[str, int] = field(default_factory=dict)
