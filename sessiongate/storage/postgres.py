from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SESSION_COLUMNS = (
    "refresh_token",
    "device_info",
    "ip_address",
    "user_agent",
    "login_type",
    "active",
    "expires_at",
    "last_activity_at",
    "updated_at",
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_user (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    name TEXT,
    image_url TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    role_ids TEXT[] NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS user_credential (
    user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
    password_hash TEXT NOT NULL,
    password_algo TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS auth_session (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    refresh_token TEXT NOT NULL,
    device_info TEXT,
    ip_address TEXT,
    user_agent TEXT,
    login_type TEXT NOT NULL DEFAULT 'email',
    active BOOLEAN NOT NULL DEFAULT TRUE,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_activity_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS auth_session_refresh_idx ON auth_session (refresh_token);
CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id, active);
CREATE INDEX IF NOT EXISTS auth_session_ip_idx ON auth_session (ip_address, created_at);
CREATE TABLE IF NOT EXISTS login_history (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    success BOOLEAN NOT NULL,
    ip_address TEXT,
    user_agent TEXT,
    device_info TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS login_history_email_idx ON login_history (email, created_at);
"""


class PostgresStore:
    """Postgres-backed users, sessions and login history.

    Session rotation is a single conditional UPDATE so concurrent rotations of
    the same refresh token cannot both succeed.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    @staticmethod
    def _row_to_user(row: dict, prefix: str = "") -> User:
        return User(
            id=str(row[f"{prefix}id"]),
            email=row[f"{prefix}email"],
            name=row.get(f"{prefix}name"),
            image_url=row.get(f"{prefix}image_url"),
            status=row.get(f"{prefix}status") or UserStatus.ACTIVE,
            email_verified=bool(row.get(f"{prefix}email_verified")),
            role_ids=list(row.get(f"{prefix}role_ids") or []),
            created_at=row.get(f"{prefix}created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token=row["refresh_token"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            device_info=row.get("device_info"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            login_type=row.get("login_type") or "email",
            active=bool(row.get("active")),
            last_activity_at=row.get("last_activity_at"),
            updated_at=row.get("updated_at"),
        )

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
        user = User(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            name=name,
            image_url=image_url,
            status=status,
            email_verified=email_verified,
            role_ids=list(role_ids or []),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, image_url, status, email_verified, role_ids, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.image_url,
                        user.status,
                        user.email_verified,
                        user.role_ids,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_status(self, user_id: str, status: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s WHERE id = %s RETURNING *",
                (status, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET email_verified = TRUE WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token, device_info, ip_address, user_agent,
                                              login_type, active, expires_at, created_at, last_activity_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token,
                        session.device_info,
                        session.ip_address,
                        session.user_agent,
                        session.login_type,
                        session.active,
                        session.expires_at,
                        session.created_at,
                        session.last_activity_at,
                        session.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": session.id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def find_active_session(
        self, session_id: str, user_id: str, *, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE id = %s AND user_id = %s AND active AND expires_at > %s
                """,
                (session_id, user_id, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def find_active_session_by_refresh_token(
        self, refresh_token: str, user_id: str, *, now: datetime
    ) -> Optional[SessionWithUser]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT s.*,
                       u.id AS u_id, u.email AS u_email, u.name AS u_name,
                       u.image_url AS u_image_url, u.status AS u_status,
                       u.email_verified AS u_email_verified, u.role_ids AS u_role_ids,
                       u.created_at AS u_created_at
                FROM auth_session s
                JOIN app_user u ON u.id = s.user_id
                WHERE s.refresh_token = %s AND s.user_id = %s
                  AND s.active AND s.expires_at > %s
                """,
                (refresh_token, user_id, now),
            ).fetchone()
        if not row:
            return None
        return SessionWithUser(
            session=self._row_to_session(row), user=self._row_to_user(row, prefix="u_")
        )

    def update_session(self, session_id: str, **patch: Any) -> Optional[Session]:
        unknown = set(patch) - set(_SESSION_COLUMNS)
        if unknown:
            raise ValueError(f"unknown session fields: {sorted(unknown)}")
        if patch.get("active") is True:
            raise ValueError("sessions cannot be reactivated")
        patch.setdefault("updated_at", utcnow())
        # Column names come from the whitelist above, values are parameterized
        assignments = ", ".join(f"{name} = %s" for name in patch)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE auth_session SET {assignments} WHERE id = %s RETURNING *",
                (*patch.values(), session_id),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def rotate_refresh_token(
        self,
        session_id: str,
        old_token: str,
        new_token: str,
        *,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token = %s, expires_at = %s, last_activity_at = %s, updated_at = %s
                WHERE id = %s AND refresh_token = %s AND active AND expires_at > %s
                """,
                (new_token, expires_at, now, now, session_id, old_token, now),
            )
            return result.rowcount == 1

    def deactivate_session(self, session_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET active = FALSE, updated_at = %s WHERE id = %s",
                (now, session_id),
            )
            return result.rowcount > 0

    def deactivate_sessions_by_refresh_token(
        self, refresh_token: str, *, now: datetime
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET active = FALSE, updated_at = %s
                WHERE refresh_token = %s AND active
                """,
                (now, refresh_token),
            )
            return result.rowcount

    def deactivate_user_sessions(self, user_id: str, *, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET active = FALSE, updated_at = %s WHERE user_id = %s AND active",
                (now, user_id),
            )
            return result.rowcount

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

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
        clauses: List[str] = []
        params: List[Any] = []
        if status == "active":
            clauses.append("s.active AND s.expires_at > %s")
            params.append(now)
        elif status == "expired":
            clauses.append("(NOT s.active OR s.expires_at <= %s)")
            params.append(now)
        if login_type:
            clauses.append("s.login_type = %s")
            params.append(login_type)
        if search:
            pattern = f"%{search.strip()}%"
            clauses.append(
                "(u.email ILIKE %s OR u.name ILIKE %s OR s.ip_address ILIKE %s OR s.user_agent ILIKE %s)"
            )
            params.extend([pattern] * 4)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        direction = "ASC" if sort_order == "asc" else "DESC"
        offset = max(page - 1, 0) * limit
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM auth_session s JOIN app_user u ON u.id = s.user_id {where}",
                params,
            ).fetchone()
            rows = conn.execute(
                f"""
                SELECT s.*,
                       u.id AS u_id, u.email AS u_email, u.name AS u_name,
                       u.image_url AS u_image_url, u.status AS u_status,
                       u.email_verified AS u_email_verified, u.role_ids AS u_role_ids,
                       u.created_at AS u_created_at
                FROM auth_session s
                JOIN app_user u ON u.id = s.user_id
                {where}
                ORDER BY s.{sort_by} {direction} NULLS LAST
                LIMIT %s OFFSET %s
                """,
                [*params, limit, offset],
            ).fetchall()
        items = [
            SessionWithUser(session=self._row_to_session(r), user=self._row_to_user(r, prefix="u_"))
            for r in rows
        ]
        return items, int(total_row["total"]) if total_row else 0

    def session_stats(self, *, now: datetime) -> SessionStats:
        with self._connect() as conn:
            totals = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COUNT(*) FILTER (WHERE active AND expires_at > %s) AS active
                FROM auth_session
                """,
                (now,),
            ).fetchone()
            by_type = conn.execute(
                "SELECT login_type, COUNT(*) AS count FROM auth_session GROUP BY login_type"
            ).fetchall()
        total = int(totals["total"]) if totals else 0
        active = int(totals["active"]) if totals else 0
        return SessionStats(
            total=total,
            active=active,
            expired=total - active,
            login_types={row["login_type"]: int(row["count"]) for row in by_type},
        )

    def list_active_sessions(
        self,
        *,
        now: datetime,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        created_after: Optional[datetime] = None,
    ) -> List[Session]:
        clauses = ["active", "expires_at > %s"]
        params: List[Any] = [now]
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if ip_address is not None:
            clauses.append("ip_address = %s")
            params.append(ip_address)
        if created_after is not None:
            clauses.append("created_at >= %s")
            params.append(created_after)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM auth_session WHERE {' AND '.join(clauses)} ORDER BY created_at DESC",
                params,
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def purge_sessions(self, *, now: datetime, inactive_before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM auth_session
                WHERE expires_at <= %s
                   OR (NOT active AND COALESCE(updated_at, created_at) < %s)
                """,
                (now, inactive_before),
            )
            return result.rowcount

    # login history
    def add_login_history(self, entry: LoginHistoryEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_history (id, email, success, ip_address, user_agent, device_info, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.email,
                    entry.success,
                    entry.ip_address,
                    entry.user_agent,
                    entry.device_info,
                    entry.created_at,
                ),
            )

    def list_login_history(self, email: str, limit: int = 50) -> List[LoginHistoryEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM login_history WHERE email = %s ORDER BY created_at DESC LIMIT %s",
                (email.strip().lower(), limit),
            ).fetchall()
        return [
            LoginHistoryEntry(
                id=r["id"],
                email=r["email"],
                success=r["success"],
                ip_address=r.get("ip_address"),
                user_agent=r.get("user_agent"),
                device_info=r.get("device_info"),
                created_at=r["created_at"],
            )
            for r in rows
        ]
