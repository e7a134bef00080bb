from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Header, Request, Response

from sessiongate.api.error_handling import AUTH_COOKIES
from sessiongate.api.gate import REFRESH_COOKIE, apply_rate_limit_headers
from sessiongate.api.schemas import (
    Envelope,
    LoginData,
    LoginRequest,
    MeData,
    RefreshData,
    RefreshRequest,
    UserSummary,
)
from sessiongate.config import Settings
from sessiongate.logging import get_logger
from sessiongate.service.client_info import ClientInfo
from sessiongate.service.errors import (
    InvalidTokenError,
    InvalidTypeError,
    NotFoundError,
    RateLimitedError,
    TokenDeniedError,
    TokenExpiredError,
    TokenVerificationError,
    UnauthorizedError,
)
from sessiongate.service.refresh import extract_bearer
from sessiongate.service.runtime import Runtime, get_runtime
from sessiongate.service.tokens import ACCESS

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

FINGERPRINT_COOKIE = "fp"
AUTH_FLAG_COOKIE = "auth"

_AUTH_ACTIONS = {"login", "refresh", "logout", "me"}


def _client_info(request: Request) -> ClientInfo:
    return ClientInfo.from_headers(
        request.headers, request.client.host if request.client else None
    )


async def _enforce_rate_limit(
    runtime: Runtime, client: ClientInfo, path: str, response: Response
) -> None:
    """Stricter per-route limit for the auth endpoints.

    Raises:
        RateLimitedError: when the caller exhausted the window
    """
    limiter = runtime.rate_limiter
    result = await limiter.check(
        f"auth:{client.ip_address or 'unknown'}:{path}",
        runtime.settings.auth_rate_limit_requests,
        runtime.settings.rate_limit_window_seconds,
    )
    apply_rate_limit_headers(response, result, limiter.clock())
    if not result.allowed:
        raise RateLimitedError(detail={"retryAfter": result.retry_after(limiter.clock())})


def _apply_auth_cookies(
    response: Response,
    settings: Settings,
    *,
    access_token: str,
    refresh_token: str,
    fingerprint: Optional[str],
) -> None:
    response.headers["Authorization"] = f"Bearer {access_token}"
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        max_age=settings.refresh_token_ttl_days * 24 * 3600,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )
    if fingerprint:
        response.set_cookie(
            FINGERPRINT_COOKIE,
            fingerprint,
            max_age=settings.refresh_token_ttl_days * 24 * 3600,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="strict",
            path="/",
        )
    # Readable by the browser app so it knows a login happened
    response.set_cookie(
        AUTH_FLAG_COOKIE,
        "login",
        max_age=settings.refresh_token_ttl_days * 24 * 3600,
        httponly=False,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def _clear_auth_cookies(response: Response) -> None:
    for name in AUTH_COOKIES:
        response.delete_cookie(name, path="/")


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password and open a session.

    Raises:
        401: unknown email, wrong password or unverified email
        403: account suspended or inactive
        429: rate limit exceeded
    """
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_rate_limit(runtime, client, request.url.path, response)
    result = await runtime.login.login(body.email, body.password, body.fingerprint, client)
    _apply_auth_cookies(
        response,
        runtime.settings,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        fingerprint=result.fingerprint,
    )
    data = LoginData(
        user=UserSummary(
            id=result.user.id,
            email=result.user.email,
            name=result.user.name,
            image_url=result.user.image_url,
            roles=result.user.role_ids,
        ),
        token=result.access_token,
        refresh_token=result.refresh_token,
        session_id=result.session_id,
        fingerprint=result.fingerprint,
    )
    return Envelope(status="ok", data=data.to_wire(), message="loginSuccess")


@router.post("/refresh", response_model=Envelope)
async def refresh(
    body: RefreshRequest,
    request: Request,
    response: Response,
    token: Optional[str] = Cookie(None),
    fp: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None),
):
    """Re-validate (``type="refresh"``) or rotate (``type="token"``) the session.

    Any 401 outcome also clears the auth cookies.
    """
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_rate_limit(runtime, client, request.url.path, response)
    result = await runtime.refresh.handle(
        body.type,
        refresh_token=token,
        fingerprint=fp,
        authorization=authorization,
        client=client,
    )
    if result.access_token:
        _apply_auth_cookies(
            response,
            runtime.settings,
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            fingerprint=fp,
        )
    data = RefreshData(token=result.access_token, refresh_token=result.refresh_token)
    return Envelope(
        status="ok", data=data.model_dump(by_alias=True, exclude_none=True), message="refreshSuccess"
    )


@router.post("/logout", response_model=Envelope)
async def logout(request: Request, response: Response, token: Optional[str] = Cookie(None)):
    """Deactivate the session behind the refresh cookie; always succeeds."""
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_rate_limit(runtime, client, request.url.path, response)
    await runtime.refresh.logout(token)
    _clear_auth_cookies(response)
    return Envelope(status="ok", message="Logout")


@router.get("/me", response_model=Envelope)
async def me(authorization: Optional[str] = Header(None)):
    """Return the user behind a bearer access token.

    Raises:
        401: missing bearer token (TokenDenied) or a token that fails verification
        404: the token's user no longer exists
    """
    runtime = get_runtime()
    token = extract_bearer(authorization)
    if not token:
        raise TokenDeniedError()
    try:
        payload = runtime.tokens.verify(token, ACCESS)
    except (InvalidTokenError, TokenExpiredError, TokenVerificationError) as exc:
        logger.info("me_token_rejected", reason=exc.error_code.value)
        raise UnauthorizedError() from exc
    user = runtime.store.get_user(payload.user_id)
    if not user:
        raise NotFoundError()
    data = MeData(
        user=UserSummary(
            id=user.id,
            email=user.email,
            name=user.name,
            image_url=user.image_url,
            roles=user.role_ids,
        )
    )
    return Envelope(status="ok", data=data.to_wire())


@router.api_route("/{action}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def unsupported(action: str, request: Request):
    if action in _AUTH_ACTIONS:
        raise InvalidTypeError(status_code=405)
    raise InvalidTypeError(status_code=400)
