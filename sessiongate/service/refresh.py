from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sessiongate.config import Settings
from sessiongate.logging import get_logger
from sessiongate.service.client_info import ClientInfo
from sessiongate.service.errors import (
    InvalidTokenError,
    InvalidTypeError,
    ServerError,
    ServiceError,
    TokenDeniedError,
    TokenExpiredError,
)
from sessiongate.service.login import ensure_account_usable
from sessiongate.service.sessions import SessionStore
from sessiongate.service.tokens import ACCESS, TokenPayload, TokenService

logger = get_logger(__name__)

VALIDATE = "refresh"
ROTATE = "token"
REFRESH_KINDS = (VALIDATE, ROTATE)


@dataclass
class RefreshResult:
    refresh_token: str
    access_token: Optional[str] = None


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


class RefreshOrchestrator:
    """Re-validates or rotates a session from its refresh cookie.

    Both operations need the refresh token and the fingerprint, which travel in
    separate cookies. Any sign of token reuse by another client (fingerprint,
    session or IP mismatch) deactivates the session for good.
    """

    def __init__(
        self,
        store: SessionStore,
        tokens: TokenService,
        settings: Settings,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self._clock = now

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def handle(
        self,
        kind: str,
        *,
        refresh_token: Optional[str],
        fingerprint: Optional[str],
        authorization: Optional[str] = None,
        client: ClientInfo = ClientInfo(),
    ) -> RefreshResult:
        if kind == VALIDATE:
            return await self.validate_session(
                refresh_token=refresh_token,
                fingerprint=fingerprint,
                authorization=authorization,
                client=client,
            )
        if kind == ROTATE:
            return await self.rotate_session(
                refresh_token=refresh_token, fingerprint=fingerprint
            )
        raise InvalidTypeError(status_code=400)

    def _open_refresh_token(
        self, refresh_token: Optional[str], fingerprint: Optional[str]
    ) -> TokenPayload:
        if not refresh_token or not fingerprint:
            raise TokenDeniedError()
        payload = self.tokens.verify_refresh_token(refresh_token)
        if payload is None or not payload.session_id or not payload.user_id:
            raise InvalidTokenError()
        if payload.fingerprint != fingerprint:
            logger.warning("refresh_fingerprint_mismatch", session_id=payload.session_id)
            raise TokenDeniedError()
        return payload

    def _revoke(self, session_id: str, reason: str) -> None:
        logger.warning("session_revoked", session_id=session_id, reason=reason)
        self.store.deactivate_session(session_id, now=self._now())

    async def validate_session(
        self,
        *,
        refresh_token: Optional[str],
        fingerprint: Optional[str],
        authorization: Optional[str],
        client: ClientInfo,
    ) -> RefreshResult:
        """Confirm the caller's cookies still match a live session, without rotating."""
        payload = self._open_refresh_token(refresh_token, fingerprint)

        access_token = extract_bearer(authorization)
        if not access_token:
            raise InvalidTypeError(status_code=401)
        try:
            access = self.tokens.verify(access_token, ACCESS)
        except ServiceError:
            raise InvalidTokenError()

        if (
            access.fingerprint != payload.fingerprint
            or access.session_id != payload.session_id
        ):
            self._revoke(payload.session_id, "access_refresh_mismatch")
            if access.session_id and access.session_id != payload.session_id:
                self._revoke(access.session_id, "access_refresh_mismatch")
            raise TokenDeniedError()

        now = self._now()
        session = self.store.find_active_session(payload.session_id, payload.user_id, now=now)
        if session is None:
            raise TokenExpiredError()

        if session.active and session.ip_address and session.ip_address != client.ip_address:
            # a missing caller address counts as a change
            reason = "ip_address_changed" if client.ip_address else "ip_address_unknown"
            self._revoke(session.id, reason)
            raise TokenDeniedError()

        return RefreshResult(refresh_token=session.refresh_token)

    async def rotate_session(
        self,
        *,
        refresh_token: Optional[str],
        fingerprint: Optional[str],
    ) -> RefreshResult:
        """Swap the refresh token for a new pair and extend the session."""
        payload = self._open_refresh_token(refresh_token, fingerprint)
        now = self._now()
        found = self.store.find_active_session_by_refresh_token(
            refresh_token, payload.user_id, now=now
        )
        if found is None:
            raise TokenExpiredError()
        ensure_account_usable(found.user)

        pair = self.tokens.gen_token_pair(
            TokenPayload.for_user(found.user, found.session.id, payload.fingerprint)
        )
        expires_at = now + timedelta(days=self.settings.rotated_session_ttl_days)
        try:
            rotated = self.store.rotate_refresh_token(
                found.session.id,
                refresh_token,
                pair.refresh_token,
                expires_at=expires_at,
                now=now,
            )
        except Exception as exc:
            logger.error(
                "session_rotation_persist_failed",
                session_id=found.session.id,
                error=str(exc),
            )
            raise ServerError() from exc
        if not rotated:
            # Lost a race with a concurrent rotation or a revoke
            logger.warning("session_rotation_conflict", session_id=found.session.id)
            raise TokenExpiredError()

        logger.info("session_rotated", session_id=found.session.id)
        return RefreshResult(refresh_token=pair.refresh_token, access_token=pair.access_token)

    async def logout(self, refresh_token: Optional[str]) -> None:
        """Deactivate whatever session holds ``refresh_token``; never fails."""
        if not refresh_token:
            return
        try:
            count = self.store.deactivate_sessions_by_refresh_token(
                refresh_token, now=self._now()
            )
            logger.info("logout", deactivated=count)
        except Exception as exc:
            logger.warning("logout_deactivate_failed", error=str(exc))
