from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from sessiongate.logging import get_logger
from sessiongate.service.sessions import SESSION_SORT_FIELDS
from sessiongate.storage.errors import ConstraintViolation
from sessiongate.storage.models import (
    LoginHistoryEntry,
    Session,
    SessionStats,
    SessionWithUser,
    User,
    UserStatus,
    utcnow,
)

_SESSION_FIELDS = frozenset(
    {
        "refresh_token",
        "device_info",
        "ip_address",
        "user_agent",
        "login_type",
        "active",
        "expires_at",
        "last_activity_at",
        "updated_at",
    }
)


class MemoryStore:
    """In-process store for users, sessions and login history.

    Every operation runs under one re-entrant lock, so compare-and-update
    rotation is atomic. State is snapshotted to JSON under ``fs_root`` when
    one is given.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.history: List[LoginHistoryEntry] = []
        # RLock so helpers can be called while the lock is held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "session_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        image_url: Optional[str] = None,
        status: str = UserStatus.ACTIVE,
        email_verified: bool = False,
        role_ids: Optional[List[str]] = None,
    ) -> User:
        with self._data_lock:
            normalized = email.strip().lower()
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                image_url=image_url,
                status=status,
                email_verified=email_verified,
                role_ids=list(role_ids or []),
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def set_user_status(self, user_id: str, status: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            self._persist_state()
            return user

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def find_active_session(
        self, session_id: str, user_id: str, *, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.user_id != user_id or not sess.is_live(now):
                return None
            return replace(sess)

    def find_active_session_by_refresh_token(
        self, refresh_token: str, user_id: str, *, now: datetime
    ) -> Optional[SessionWithUser]:
        with self._data_lock:
            for sess in self.sessions.values():
                if (
                    sess.refresh_token == refresh_token
                    and sess.user_id == user_id
                    and sess.is_live(now)
                ):
                    user = self.users.get(sess.user_id)
                    if not user:
                        return None
                    return SessionWithUser(session=replace(sess), user=replace(user))
            return None

    def update_session(self, session_id: str, **patch: Any) -> Optional[Session]:
        unknown = set(patch) - _SESSION_FIELDS
        if unknown:
            raise ValueError(f"unknown session fields: {sorted(unknown)}")
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            if patch.get("active") is True and not sess.active:
                raise ValueError("sessions cannot be reactivated")
            patch.setdefault("updated_at", utcnow())
            updated = replace(sess, **patch)
            self._commit_sessions({session_id: updated})
            return replace(updated)

    def rotate_refresh_token(
        self,
        session_id: str,
        old_token: str,
        new_token: str,
        *,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_live(now) or sess.refresh_token != old_token:
                return False
            rotated = replace(
                sess,
                refresh_token=new_token,
                expires_at=expires_at,
                last_activity_at=now,
                updated_at=now,
            )
            self._commit_sessions({session_id: rotated})
            return True

    def deactivate_session(self, session_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            self._commit_sessions({session_id: replace(sess, active=False, updated_at=now)})
            return True

    def deactivate_sessions_by_refresh_token(
        self, refresh_token: str, *, now: datetime
    ) -> int:
        with self._data_lock:
            return self._deactivate_where(
                lambda s: s.active and s.refresh_token == refresh_token, now
            )

    def deactivate_user_sessions(self, user_id: str, *, now: datetime) -> int:
        with self._data_lock:
            return self._deactivate_where(
                lambda s: s.active and s.user_id == user_id, now
            )

    def _deactivate_where(self, predicate, now: datetime) -> int:
        changed = {
            sid: replace(sess, active=False, updated_at=now)
            for sid, sess in self.sessions.items()
            if predicate(sess)
        }
        if changed:
            self._commit_sessions(changed)
        return len(changed)

    def _commit_sessions(self, changed: Dict[str, Session]) -> None:
        """Swap in new session rows and persist; the previous rows come back if
        the snapshot cannot be written. Callers hold ``_data_lock``."""
        previous = {sid: self.sessions.get(sid) for sid in changed}
        self.sessions.update(changed)
        try:
            self._persist_state()
        except Exception:
            for sid, sess in previous.items():
                if sess is None:
                    self.sessions.pop(sid, None)
                else:
                    self.sessions[sid] = sess
            raise

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed is None:
                return False
            try:
                self._persist_state()
            except Exception:
                self.sessions[session_id] = removed
                raise
            return True

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
    ) -> Tuple[List[SessionWithUser], int]:
        if sort_by not in SESSION_SORT_FIELDS:
            raise ValueError(f"unsupported sort field: {sort_by}")
        needle = search.strip().lower() if search else None
        with self._data_lock:
            rows: List[SessionWithUser] = []
            for sess in self.sessions.values():
                user = self.users.get(sess.user_id)
                if not user:
                    continue
                if status == "active" and not sess.is_live(now):
                    continue
                if status == "expired" and sess.is_live(now):
                    continue
                if login_type and sess.login_type != login_type:
                    continue
                if needle and not any(
                    needle in (value or "").lower()
                    for value in (user.email, user.name, sess.ip_address, sess.user_agent)
                ):
                    continue
                rows.append(SessionWithUser(session=replace(sess), user=replace(user)))
        rows.sort(
            key=lambda row: getattr(row.session, sort_by) or datetime.min.replace(tzinfo=now.tzinfo),
            reverse=sort_order != "asc",
        )
        total = len(rows)
        start = max(page - 1, 0) * limit
        return rows[start : start + limit], total

    def session_stats(self, *, now: datetime) -> SessionStats:
        with self._data_lock:
            sessions = list(self.sessions.values())
        active = sum(1 for s in sessions if s.is_live(now))
        login_types: Dict[str, int] = {}
        for sess in sessions:
            login_types[sess.login_type] = login_types.get(sess.login_type, 0) + 1
        return SessionStats(
            total=len(sessions),
            active=active,
            expired=len(sessions) - active,
            login_types=login_types,
        )

    def list_active_sessions(
        self,
        *,
        now: datetime,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        created_after: Optional[datetime] = None,
    ) -> List[Session]:
        with self._data_lock:
            matches = [
                replace(s)
                for s in self.sessions.values()
                if s.is_live(now)
                and (user_id is None or s.user_id == user_id)
                and (ip_address is None or s.ip_address == ip_address)
                and (created_after is None or s.created_at >= created_after)
            ]
        matches.sort(key=lambda s: s.created_at, reverse=True)
        return matches

    def purge_sessions(self, *, now: datetime, inactive_before: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, s in self.sessions.items()
                if s.expires_at <= now
                or (not s.active and (s.updated_at or s.created_at) < inactive_before)
            ]
            for sid in stale:
                del self.sessions[sid]
            if stale:
                self._persist_state()
            return len(stale)

    # login history
    def add_login_history(self, entry: LoginHistoryEntry) -> None:
        with self._data_lock:
            self.history.append(entry)
            self._persist_state()

    def list_login_history(self, email: str, limit: int = 50) -> List[LoginHistoryEntry]:
        normalized = email.strip().lower()
        with self._data_lock:
            entries = [e for e in self.history if e.email == normalized]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit]

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "history": [self._serialize_history(h) for h in self.history],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.history = [self._deserialize_history(h) for h in data.get("history", [])]
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "image_url": user.image_url,
            "status": user.status,
            "email_verified": user.email_verified,
            "role_ids": user.role_ids,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name"),
            image_url=data.get("image_url"),
            status=data.get("status", UserStatus.ACTIVE),
            email_verified=data.get("email_verified", False),
            role_ids=list(data.get("role_ids") or []),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token": session.refresh_token,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "device_info": session.device_info,
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "login_type": session.login_type,
            "active": session.active,
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "updated_at": self._serialize_datetime(session.updated_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            refresh_token=data["refresh_token"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            device_info=data.get("device_info"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            login_type=data.get("login_type", "email"),
            active=data.get("active", False),
            last_activity_at=self._deserialize_datetime(data.get("last_activity_at")),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )

    def _serialize_history(self, entry: LoginHistoryEntry) -> dict:
        return {
            "id": entry.id,
            "email": entry.email,
            "success": entry.success,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "device_info": entry.device_info,
            "created_at": self._serialize_datetime(entry.created_at),
        }

    def _deserialize_history(self, data: dict) -> LoginHistoryEntry:
        return LoginHistoryEntry(
            id=data["id"],
            email=data["email"],
            success=data.get("success", False),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            device_info=data.get("device_info"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
