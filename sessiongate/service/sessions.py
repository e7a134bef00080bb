from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from sessiongate.storage.models import (
    LoginHistoryEntry,
    Session,
    SessionStats,
    SessionWithUser,
    User,
)

# Columns accepted by list_sessions(sort_by=...)
SESSION_SORT_FIELDS = ("created_at", "last_activity_at", "expires_at", "updated_at")


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        image_url: Optional[str] = None,
        status: str = "active",
        email_verified: bool = False,
        role_ids: Optional[List[str]] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_user_status(self, user_id: str, status: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class SessionStore(Protocol):
    """Persistence contract for sessions.

    Lookups never return a session whose ``expires_at`` has passed, whatever
    its ``active`` flag says. ``active`` only ever moves from True to False.
    """

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_active_session(
        self, session_id: str, user_id: str, *, now: datetime
    ) -> Optional[Session]: ...

    def find_active_session_by_refresh_token(
        self, refresh_token: str, user_id: str, *, now: datetime
    ) -> Optional[SessionWithUser]: ...

    def update_session(self, session_id: str, **patch) -> Optional[Session]: ...

    def rotate_refresh_token(
        self,
        session_id: str,
        old_token: str,
        new_token: str,
        *,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        """Swap ``old_token`` for ``new_token`` only if it is still current.

        Returns False when the session is inactive, expired or already rotated.
        """
        ...

    def deactivate_session(self, session_id: str, *, now: datetime) -> bool: ...

    def deactivate_sessions_by_refresh_token(
        self, refresh_token: str, *, now: datetime
    ) -> int: ...

    def deactivate_user_sessions(self, user_id: str, *, now: datetime) -> int: ...

    def delete_session(self, session_id: str) -> bool: ...

    def list_sessions(
        self,
        *,
        now: datetime,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
        status: Optional[str] = None,
        login_type: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[SessionWithUser], int]: ...

    def session_stats(self, *, now: datetime) -> SessionStats: ...

    def list_active_sessions(
        self,
        *,
        now: datetime,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        created_after: Optional[datetime] = None,
    ) -> List[Session]: ...

    def purge_sessions(self, *, now: datetime, inactive_before: datetime) -> int: ...


class HistoryStore(Protocol):
    def add_login_history(self, entry: LoginHistoryEntry) -> None: ...

    def list_login_history(
        self, email: str, limit: int = 50
    ) -> List[LoginHistoryEntry]: ...


class AuthStore(UserStore, SessionStore, HistoryStore, Protocol):
    """Everything the login, refresh and maintenance services need."""
