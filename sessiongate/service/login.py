from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from sessiongate.config import Settings
from sessiongate.logging import get_logger
from sessiongate.service.client_info import ClientInfo
from sessiongate.service.errors import (
    AccountInactiveError,
    AccountSuspendedError,
    AuthenticationError,
    EmailVerificationError,
)
from sessiongate.service.history import LoginHistoryRecorder
from sessiongate.service.maintenance import SessionMaintenance
from sessiongate.service.sessions import AuthStore
from sessiongate.service.tokens import TokenPayload, TokenService
from sessiongate.storage.models import Session, User, UserStatus

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


@dataclass
class LoginResult:
    user: User
    access_token: str
    refresh_token: str
    session_id: str
    fingerprint: Optional[str]
    session: Session


def ensure_account_usable(user: User) -> None:
    """Raise when the account status forbids issuing tokens."""
    if user.status == UserStatus.SUSPENDED:
        raise AccountSuspendedError()
    if user.status == UserStatus.INACTIVE:
        raise AccountInactiveError()


class LoginService:
    """Verifies email/password credentials and opens a new session."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        history: LoginHistoryRecorder,
        settings: Settings,
        *,
        maintenance: SessionMaintenance | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.history = history
        self.settings = settings
        self.maintenance = maintenance
        self._clock = now
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    async def login(
        self,
        email: str,
        password: str,
        fingerprint: Optional[str],
        client: ClientInfo,
    ) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("login_unknown_email")
            raise AuthenticationError()
        if not self.verify_password(user.id, password):
            self.history.record(email, False, client)
            raise AuthenticationError()
        if not user.email_verified:
            raise EmailVerificationError(detail={"emailVerification": True})
        ensure_account_usable(user)

        now = self._now()
        session_id = str(uuid.uuid4())
        pair = self.tokens.gen_token_pair(
            TokenPayload.for_user(user, session_id, fingerprint)
        )
        session = self.store.create_session(
            Session.new(
                user.id,
                pair.refresh_token,
                session_id=session_id,
                ttl=timedelta(days=self.settings.session_ttl_days),
                device_info=client.to_json(),
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                login_type="email",
                now=now,
            )
        )
        self.history.record(email, True, client)
        self._trim_user_sessions(user.id)
        self.logger.info("login_succeeded", user_id=user.id, session_id=session_id)
        return LoginResult(
            user=user,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            session_id=session_id,
            fingerprint=fingerprint,
            session=session,
        )

    def _trim_user_sessions(self, user_id: str) -> None:
        if self.maintenance is None:
            return
        try:
            self.maintenance.cleanup_duplicate_sessions(user_id)
        except Exception as exc:
            self.logger.warning("user_session_trim_failed", user_id=user_id, error=str(exc))
