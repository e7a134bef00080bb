"""Tests for the request gate middleware.

A small app is mounted behind ``RequestGate`` with a runtime whose settings
and limiter clock are controlled by the test.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from sessiongate.api.error_handling import register_exception_handlers
from sessiongate.api.gate import (
    DEVICE_COOKIE,
    LOCALE_COOKIE,
    SECURITY_HEADERS,
    RequestGate,
    is_bot,
    is_protected_route,
    is_public_route,
)
from sessiongate.config import DEFAULT_PROTECTED_PREFIXES, DEFAULT_PUBLIC_ROUTES, Settings
from sessiongate.service import runtime as runtime_module
from sessiongate.service.rate_limit import RateLimiter
from sessiongate.service.runtime import Runtime
from sessiongate.storage.memory import MemoryStore

BROWSER_UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/605.1.15 Safari/605.1.15"


class FakeClock:
    def __init__(self) -> None:
        self.now = 5_000.0

    def __call__(self) -> float:
        return self.now


def _build_app() -> FastAPI:
    app = FastAPI()
    app.middleware("http")(RequestGate())
    register_exception_handlers(app)

    @app.get("/product/list")
    async def product_list():
        return {"page": "products"}

    @app.get("/api/product/items")
    async def product_items():
        return {"items": []}

    @app.get("/notice/latest")
    async def notice():
        return {"page": "notice"}

    @app.get("/api/auth/ping")
    async def auth_ping():
        return {"pong": True}

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    return app


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gate_settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        protected_prefixes=["/product", "/api/product"],
        rate_limit_requests=3,
        rate_limit_window_seconds=60,
        cookie_secure=False,
    )


@pytest.fixture
def client(gate_settings, clock):
    runtime_module.runtime = Runtime(
        gate_settings, store=MemoryStore(), rate_limiter=RateLimiter(clock=clock)
    )
    return TestClient(_build_app())


class TestRouteClassification:
    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/product", True),
            ("/product/42", True),
            ("/admin/users", True),
            ("/products", False),
            ("/notice", False),
            ("/", False),
        ],
    )
    def test_protected(self, path, expected):
        assert is_protected_route(path, DEFAULT_PROTECTED_PREFIXES, DEFAULT_PUBLIC_ROUTES) is expected

    def test_public_allow_list_wins(self):
        assert is_public_route("/auth/login", DEFAULT_PUBLIC_ROUTES)
        assert not is_protected_route("/admin/login", ["/admin"], ["/admin/login"])

    @pytest.mark.parametrize(
        "ua,expected",
        [
            (BROWSER_UA, False),
            ("Googlebot/2.1 (+http://www.google.com/bot.html)", True),
            ("curl/8.4.0", True),
            ("", True),
            (None, True),
        ],
    )
    def test_is_bot(self, ua, expected):
        assert is_bot(ua) is expected


class TestProtection:
    def test_page_without_cookie_redirects_to_login(self, client):
        response = client.get("/product/list", follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"] == "/auth/login"

    def test_api_without_cookie_is_unauthorized(self, client):
        response = client.get("/api/product/items")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "Unauthorized"

    def test_cookie_presence_is_enough(self, client):
        client.cookies.set("token", "opaque-value")

        response = client.get("/product/list")

        assert response.status_code == 200
        assert response.json() == {"page": "products"}

    def test_public_pages_pass(self, client):
        assert client.get("/notice/latest").status_code == 200

    def test_auth_api_passes_without_cookie(self, client):
        assert client.get("/api/auth/ping").status_code == 200


class TestRateLimit:
    def test_limit_per_ip_and_path(self, client):
        for _ in range(3):
            assert client.get("/notice/latest").status_code == 200

        blocked = client.get("/notice/latest")

        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "APILimit"
        assert blocked.headers["Retry-After"] == "60"
        assert blocked.headers["X-RateLimit-Remaining"] == "0"
        # a different path has its own window
        assert client.get("/api/auth/ping").status_code == 200

    def test_window_resets(self, client, clock):
        for _ in range(4):
            client.get("/notice/latest")

        clock.now += 61

        assert client.get("/notice/latest").status_code == 200

    def test_forwarded_ip_is_used(self, client):
        for _ in range(3):
            client.get("/notice/latest", headers={"x-forwarded-for": "203.0.113.1, 10.0.0.1"})

        assert client.get(
            "/notice/latest", headers={"x-forwarded-for": "203.0.113.1"}
        ).status_code == 429
        assert client.get(
            "/notice/latest", headers={"x-forwarded-for": "::ffff:203.0.113.2"}
        ).status_code == 200

    def test_health_is_exempt(self, client):
        for _ in range(10):
            assert client.get("/healthz").status_code == 200


class TestDecoration:
    def test_security_headers(self, client):
        response = client.get("/notice/latest")

        for name, value in SECURITY_HEADERS.items():
            assert response.headers[name] == value

    def test_device_cookie_for_browsers_only(self, client):
        browser = client.get("/notice/latest", headers={"user-agent": BROWSER_UA})
        bot = TestClient(client.app).get(
            "/notice/latest", headers={"user-agent": "Googlebot/2.1"}
        )

        assert DEVICE_COOKIE in browser.cookies
        assert DEVICE_COOKIE not in bot.cookies

    def test_device_cookie_not_replaced(self, client):
        client.cookies.set(DEVICE_COOKIE, "existing")

        response = client.get("/notice/latest", headers={"user-agent": BROWSER_UA})

        assert DEVICE_COOKIE not in response.cookies

    @pytest.mark.parametrize(
        "country,locale",
        [("JP", "ja"), ("us", "en"), ("KZ", "ru"), ("KR", "ko"), ("FR", "ko"), (None, "ko")],
    )
    def test_locale_cookie_from_country(self, client, country, locale):
        headers = {"cf-ipcountry": country} if country else {}

        response = client.get("/notice/latest", headers=headers)

        assert response.cookies[LOCALE_COOKIE] == locale

    def test_locale_cookie_not_overwritten(self, client):
        client.cookies.set(LOCALE_COOKIE, "en")

        response = client.get("/notice/latest", headers={"cf-ipcountry": "JP"})

        assert LOCALE_COOKIE not in response.cookies

    def test_rejected_requests_are_decorated(self, client):
        response = client.get("/product/list", follow_redirects=False)

        assert response.headers["X-Frame-Options"] == "DENY"
        assert LOCALE_COOKIE in response.cookies
