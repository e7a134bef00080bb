from __future__ import annotations

import threading
from pathlib import Path

from sessiongate.config import RateLimitBackend, Settings, get_settings, reset_settings_cache
from sessiongate.logging import get_logger
from sessiongate.service.history import LoginHistoryRecorder
from sessiongate.service.login import LoginService
from sessiongate.service.maintenance import SessionMaintenance
from sessiongate.service.rate_limit import Limiter, RateLimiter, RedisRateLimiter
from sessiongate.service.refresh import RefreshOrchestrator
from sessiongate.service.sessions import AuthStore
from sessiongate.service.tokens import TokenService
from sessiongate.storage.memory import MemoryStore

logger = get_logger(__name__)


def build_store(settings: Settings) -> AuthStore:
    if settings.use_memory_store:
        # Test runs start from an empty store every time
        if settings.test_mode:
            return MemoryStore()
        return MemoryStore(fs_root=str(Path(settings.shared_fs_root)))
    from sessiongate.storage.postgres import PostgresStore

    return PostgresStore(settings.database_url)


def build_rate_limiter(settings: Settings) -> Limiter:
    if settings.rate_limit_backend == RateLimitBackend.REDIS:
        return RedisRateLimiter.from_url(settings.redis_url)
    return RateLimiter(sweep_interval_seconds=settings.rate_limit_sweep_seconds)


class Runtime:
    """Holds the wired service singletons for the app process."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: AuthStore | None = None,
        rate_limiter: Limiter | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store if store is not None else build_store(self.settings)
        self.tokens = TokenService(self.settings)
        self.rate_limiter = rate_limiter or build_rate_limiter(self.settings)
        self.history = LoginHistoryRecorder(self.store)
        self.maintenance = SessionMaintenance(self.store, self.settings)
        self.login = LoginService(
            self.store,
            self.tokens,
            self.history,
            self.settings,
            maintenance=self.maintenance,
        )
        self.refresh = RefreshOrchestrator(self.store, self.tokens, self.settings)

        logger.info(
            "runtime_initialized",
            store=type(self.store).__name__,
            rate_limiter=type(self.rate_limiter).__name__,
            test_mode=self.settings.test_mode,
        )

    async def start(self) -> None:
        await self.rate_limiter.start()

    async def close(self) -> None:
        await self.history.drain()
        await self.rate_limiter.stop()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
