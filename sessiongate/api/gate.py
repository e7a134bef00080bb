from __future__ import annotations

import re
import uuid
from typing import Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import RedirectResponse

from sessiongate.api.error_handling import error_response
from sessiongate.logging import get_logger
from sessiongate.service.client_info import ClientInfo
from sessiongate.service.errors import ErrorCode
from sessiongate.service.locale import locale_for_country
from sessiongate.service.rate_limit import RateLimitResult
from sessiongate.service.runtime import get_runtime

logger = get_logger(__name__)

DEVICE_COOKIE = "did"
LOCALE_COOKIE = "NEXT_LOCALE"
REFRESH_COOKIE = "token"
AUTH_API_PREFIX = "/api/auth"

_DEVICE_COOKIE_MAX_AGE = 365 * 24 * 3600
_LOCALE_COOKIE_MAX_AGE = 365 * 24 * 3600

# Paths the gate lets through untouched (no rate limit, no cookies)
_EXEMPT_PREFIXES = ("/healthz", "/favicon.ico", "/static/", "/docs", "/openapi.json")

_BOT_UA = re.compile(
    r"bot|crawl|spider|slurp|curl|wget|python-requests|python-urllib|httpx|aiohttp|"
    r"go-http-client|java/|okhttp|libwww|headless|phantomjs|lighthouse|monitor|preview",
    re.IGNORECASE,
)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def is_bot(user_agent: Optional[str]) -> bool:
    if not user_agent or not user_agent.strip():
        return True
    return bool(_BOT_UA.search(user_agent))


def _under(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/") or "/"
    return path == prefix or path.startswith(prefix + "/")


def is_public_route(path: str, public_routes: Iterable[str]) -> bool:
    return any(_under(path, route) for route in public_routes)


def is_protected_route(
    path: str, protected_prefixes: Iterable[str], public_routes: Iterable[str]
) -> bool:
    if not any(_under(path, prefix) for prefix in protected_prefixes):
        return False
    return not is_public_route(path, public_routes)


def apply_rate_limit_headers(response: Response, result: RateLimitResult, now: float) -> None:
    response.headers["X-RateLimit-Limit"] = str(result.limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, result.remaining))
    response.headers["X-RateLimit-Reset"] = str(result.retry_after(now))


def rate_limited_response(result: RateLimitResult, now: float) -> Response:
    response = error_response(429, ErrorCode.API_LIMIT)
    apply_rate_limit_headers(response, result, now)
    response.headers["Retry-After"] = str(result.retry_after(now))
    return response


class RequestGate:
    """Front door applied to every HTTP request.

    Attaches device and locale cookies, sets security headers, enforces the
    per-IP rate limit and requires the refresh cookie on protected pages.
    The refresh cookie is only checked for presence; handlers validate it.
    """

    async def __call__(self, request: Request, call_next) -> Response:
        path = request.url.path
        if path.startswith(_EXEMPT_PREFIXES):
            return await call_next(request)

        runtime = get_runtime()
        response = await self._screen(request, runtime)
        if response is None:
            response = await call_next(request)
        self._decorate(request, response, runtime.settings)
        return response

    async def _screen(self, request: Request, runtime) -> Optional[Response]:
        settings = runtime.settings
        path = request.url.path
        client = ClientInfo.from_headers(
            request.headers, request.client.host if request.client else None
        )

        limiter = runtime.rate_limiter
        result = await limiter.check(
            f"{client.ip_address or 'unknown'}:{path}",
            settings.rate_limit_requests,
            settings.rate_limit_window_seconds,
        )
        if not result.allowed:
            logger.warning("gate_rate_limited", path=path, ip_address=client.ip_address)
            return rate_limited_response(result, limiter.clock())

        if _under(path, AUTH_API_PREFIX):
            return None

        if is_protected_route(path, settings.protected_prefixes, settings.public_routes):
            if not request.cookies.get(REFRESH_COOKIE):
                if path.startswith("/api/"):
                    return error_response(401, ErrorCode.UNAUTHORIZED)
                return RedirectResponse(settings.login_path, status_code=307)
        return None

    def _decorate(self, request: Request, response: Response, settings) -> None:
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)

        if DEVICE_COOKIE not in request.cookies and not is_bot(request.headers.get("user-agent")):
            response.set_cookie(
                DEVICE_COOKIE,
                uuid.uuid4().hex,
                max_age=_DEVICE_COOKIE_MAX_AGE,
                httponly=True,
                secure=settings.cookie_secure,
                samesite="lax",
                path="/",
            )

        if LOCALE_COOKIE not in request.cookies:
            locale = locale_for_country(
                request.headers.get("cf-ipcountry"), settings.default_locale
            )
            response.set_cookie(
                LOCALE_COOKIE,
                locale,
                max_age=_LOCALE_COOKIE_MAX_AGE,
                secure=settings.cookie_secure,
                samesite="lax",
                path="/",
            )
