from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, Path, Query

from sessiongate.api.schemas import (
    AdminSessionPage,
    AdminSessionView,
    Envelope,
    SessionStatsView,
)
from sessiongate.logging import get_logger
from sessiongate.service.errors import (
    ForbiddenError,
    NotFoundError,
    TokenExpiredError,
    UnauthorizedError,
)
from sessiongate.service.refresh import extract_bearer
from sessiongate.service.runtime import get_runtime
from sessiongate.service.sessions import SESSION_SORT_FIELDS
from sessiongate.service.tokens import ACCESS, TokenPayload
from sessiongate.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])

_SORT_ALIASES = {
    "createdTime": "created_at",
    "lastActivityTime": "last_activity_at",
    "expiresTime": "expires_at",
    "updateTime": "updated_at",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def get_admin_principal(authorization: Optional[str] = Header(None)) -> TokenPayload:
    """Resolve the bearer token of an admin whose session is still live."""
    runtime = get_runtime()
    token = extract_bearer(authorization)
    if not token:
        raise UnauthorizedError()
    payload = runtime.tokens.verify(token, ACCESS)
    session = runtime.store.find_active_session(payload.session_id, payload.user_id, now=_now())
    if session is None:
        raise TokenExpiredError()
    if runtime.settings.admin_role_id not in payload.roles:
        logger.warning("admin_access_denied", user_id=payload.user_id)
        raise ForbiddenError()
    return payload


def _session_view(session: Session, user: Optional[User], now: datetime) -> AdminSessionView:
    return AdminSessionView(
        id=session.id,
        user_id=session.user_id,
        user_email=user.email if user else None,
        user_name=user.name if user else None,
        active=session.active,
        expired=not session.is_live(now),
        login_type=session.login_type,
        ip_address=session.ip_address,
        user_agent=session.user_agent,
        device_info=session.device_info,
        created_at=session.created_at,
        expires_at=session.expires_at,
        last_activity_at=session.last_activity_at,
        updated_at=session.updated_at,
    )


@router.get("/sessions", response_model=Envelope)
async def list_sessions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=256),
    status: Optional[Literal["active", "expired"]] = Query(None),
    login_type: Optional[str] = Query(None, alias="loginType", max_length=32),
    sort_by: str = Query("createdTime", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    principal: TokenPayload = Depends(get_admin_principal),
):
    runtime = get_runtime()
    sort_field = _SORT_ALIASES.get(sort_by, sort_by)
    if sort_field not in SESSION_SORT_FIELDS:
        sort_field = "created_at"
    now = _now()
    rows, total = runtime.store.list_sessions(
        now=now,
        page=page,
        limit=limit,
        search=search,
        status=status,
        login_type=login_type,
        sort_by=sort_field,
        sort_order=sort_order,
    )
    body = AdminSessionPage(
        items=[_session_view(row.session, row.user, now) for row in rows],
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
    )
    return Envelope(status="ok", data=body.to_wire())


@router.get("/sessions/stats", response_model=Envelope)
async def session_stats(principal: TokenPayload = Depends(get_admin_principal)):
    runtime = get_runtime()
    stats = runtime.store.session_stats(now=_now())
    view = SessionStatsView(
        total=stats.total,
        active=stats.active,
        expired=stats.expired,
        login_types=stats.login_types,
    )
    return Envelope(status="ok", data=view.to_wire())


@router.post("/sessions/cleanup", response_model=Envelope)
async def run_cleanup(principal: TokenPayload = Depends(get_admin_principal)):
    runtime = get_runtime()
    report = runtime.maintenance.run_once()
    logger.info("admin_session_cleanup", admin_id=principal.user_id, **report.as_dict())
    return Envelope(status="ok", data=report.as_dict())


@router.get("/sessions/{session_id}", response_model=Envelope)
async def get_session(
    session_id: str = Path(..., max_length=128),
    principal: TokenPayload = Depends(get_admin_principal),
):
    runtime = get_runtime()
    session = runtime.store.get_session(session_id)
    if session is None:
        raise NotFoundError()
    user = runtime.store.get_user(session.user_id)
    return Envelope(status="ok", data=_session_view(session, user, _now()).to_wire())


@router.post("/sessions/{session_id}/terminate", response_model=Envelope)
async def terminate_session(
    session_id: str = Path(..., max_length=128),
    principal: TokenPayload = Depends(get_admin_principal),
):
    runtime = get_runtime()
    if not runtime.store.deactivate_session(session_id, now=_now()):
        raise NotFoundError()
    logger.info("admin_session_terminated", admin_id=principal.user_id, session_id=session_id)
    return Envelope(status="ok", data={"id": session_id, "active": False})


@router.delete("/sessions/{session_id}", response_model=Envelope)
async def delete_session(
    session_id: str = Path(..., max_length=128),
    principal: TokenPayload = Depends(get_admin_principal),
):
    runtime = get_runtime()
    if not runtime.store.delete_session(session_id):
        raise NotFoundError()
    logger.info("admin_session_deleted", admin_id=principal.user_id, session_id=session_id)
    return Envelope(status="ok", data={"id": session_id, "deleted": True})


@router.post("/users/{user_id}/sessions/revoke", response_model=Envelope)
async def revoke_user_sessions(
    user_id: str = Path(..., max_length=128),
    principal: TokenPayload = Depends(get_admin_principal),
):
    runtime = get_runtime()
    if runtime.store.get_user(user_id) is None:
        raise NotFoundError()
    count = runtime.store.deactivate_user_sessions(user_id, now=_now())
    logger.info("admin_user_sessions_revoked", admin_id=principal.user_id, user_id=user_id, count=count)
    return Envelope(status="ok", data={"userId": user_id, "deactivated": count})
