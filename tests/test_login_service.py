"""Unit tests for the credential verifier.

Tests for:
- Password hashing and verification
- Login error ordering (unknown email, bad password, unverified, status)
- Session creation and token pair contents
- Login history recording and per-user session trimming
"""

from datetime import datetime, timedelta, timezone

import pytest

from sessiongate.config import Settings
from sessiongate.service.client_info import ClientInfo
from sessiongate.service.errors import (
    AccountInactiveError,
    AccountSuspendedError,
    AuthenticationError,
    EmailVerificationError,
)
from sessiongate.service.history import LoginHistoryRecorder
from sessiongate.service.login import PASSWORD_ALGO, LoginService
from sessiongate.service.maintenance import SessionMaintenance
from sessiongate.service.tokens import ACCESS, TokenService
from sessiongate.storage.memory import MemoryStore

PASSWORD = "TestPassword123!"
CLIENT = ClientInfo(ip_address="203.0.113.7", user_agent="Mozilla/5.0 test")


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        refresh_token_secret="refresh-secret-for-tests",
        max_sessions_per_user=2,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def login_service(memory_store, settings):
    tokens = TokenService(settings)
    return LoginService(
        memory_store,
        tokens,
        LoginHistoryRecorder(memory_store),
        settings,
        maintenance=SessionMaintenance(memory_store, settings),
    )


@pytest.fixture
def test_user(memory_store, login_service):
    user = memory_store.create_user(
        "test@example.com", name="Tester", email_verified=True, role_ids=["member"]
    )
    login_service.save_password(user.id, PASSWORD)
    return user


class TestPasswordHashing:
    def test_hash_is_argon2id_and_salted(self, login_service):
        first, algo = login_service.hash_password(PASSWORD)
        second, _ = login_service.hash_password(PASSWORD)

        assert algo == PASSWORD_ALGO
        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify_password(self, login_service, test_user):
        assert login_service.verify_password(test_user.id, PASSWORD)
        assert not login_service.verify_password(test_user.id, "wrong")

    def test_verify_password_without_record(self, login_service, memory_store):
        user = memory_store.create_user("nopass@example.com")

        assert not login_service.verify_password(user.id, PASSWORD)

    def test_verify_rejects_other_algorithm(self, login_service, memory_store, test_user):
        memory_store.save_password(test_user.id, "plain", "bcrypt")

        assert not login_service.verify_password(test_user.id, "plain")

    def test_verify_handles_corrupt_hash(self, login_service, memory_store, test_user):
        memory_store.save_password(test_user.id, "not-a-hash", PASSWORD_ALGO)

        assert not login_service.verify_password(test_user.id, PASSWORD)


class TestLogin:
    async def test_successful_login_creates_session(self, login_service, memory_store, test_user):
        result = await login_service.login("test@example.com", PASSWORD, "fp-1", CLIENT)

        session = memory_store.get_session(result.session_id)
        assert session is not None
        assert session.active
        assert session.refresh_token == result.refresh_token
        assert session.ip_address == "203.0.113.7"
        assert session.login_type == "email"
        assert session.expires_at - session.created_at == timedelta(days=7)

    async def test_token_pair_carries_session_and_fingerprint(self, login_service, test_user):
        result = await login_service.login("test@example.com", PASSWORD, "fp-1", CLIENT)

        access = login_service.tokens.verify(result.access_token, ACCESS)
        refresh = login_service.tokens.verify_refresh_token(result.refresh_token)

        assert access.session_id == refresh.session_id == result.session_id
        assert access.fingerprint == refresh.fingerprint == "fp-1"
        assert access.roles == ["member"]
        assert result.fingerprint == "fp-1"

    async def test_unknown_email(self, login_service):
        with pytest.raises(AuthenticationError) as exc_info:
            await login_service.login("nobody@example.com", PASSWORD, "fp", CLIENT)
        assert exc_info.value.status_code == 401

    async def test_wrong_password_records_failure(self, login_service, memory_store, test_user):
        with pytest.raises(AuthenticationError):
            await login_service.login("test@example.com", "bad", "fp", CLIENT)
        await login_service.history.drain()

        history = memory_store.list_login_history("test@example.com")
        assert [h.success for h in history] == [False]
        assert history[0].ip_address == "203.0.113.7"

    async def test_unverified_email(self, login_service, memory_store):
        user = memory_store.create_user("fresh@example.com")
        login_service.save_password(user.id, PASSWORD)

        with pytest.raises(EmailVerificationError) as exc_info:
            await login_service.login("fresh@example.com", PASSWORD, "fp", CLIENT)
        assert exc_info.value.detail == {"emailVerification": True}

    async def test_wrong_password_wins_over_unverified(self, login_service, memory_store):
        user = memory_store.create_user("fresh@example.com")
        login_service.save_password(user.id, PASSWORD)

        with pytest.raises(AuthenticationError):
            await login_service.login("fresh@example.com", "bad", "fp", CLIENT)

    @pytest.mark.parametrize(
        "status,error",
        [("suspended", AccountSuspendedError), ("inactive", AccountInactiveError)],
    )
    async def test_account_status_blocks_login(
        self, login_service, memory_store, test_user, status, error
    ):
        memory_store.set_user_status(test_user.id, status)

        with pytest.raises(error) as exc_info:
            await login_service.login("test@example.com", PASSWORD, "fp", CLIENT)
        assert exc_info.value.status_code == 403
        assert memory_store.list_active_sessions(
            now=datetime.now(timezone.utc), user_id=test_user.id
        ) == []

    async def test_success_is_recorded(self, login_service, memory_store, test_user):
        await login_service.login("test@example.com", PASSWORD, None, CLIENT)
        await login_service.history.drain()

        history = memory_store.list_login_history("test@example.com")
        assert [h.success for h in history] == [True]

    async def test_old_sessions_are_trimmed(self, login_service, memory_store, test_user):
        for _ in range(3):
            await login_service.login("test@example.com", PASSWORD, "fp", CLIENT)

        active = memory_store.list_active_sessions(
            now=datetime.now(timezone.utc), user_id=test_user.id
        )
        assert len(active) == 2
