from __future__ import annotations

import asyncio
from typing import Set

from sessiongate.logging import get_logger
from sessiongate.service.client_info import ClientInfo
from sessiongate.service.sessions import HistoryStore
from sessiongate.storage.models import LoginHistoryEntry

logger = get_logger(__name__)


class LoginHistoryRecorder:
    """Records login attempts without ever delaying or failing the login.

    Writes are scheduled as background tasks on the running loop; failures
    are logged and dropped.
    """

    def __init__(self, store: HistoryStore) -> None:
        self.store = store
        self._pending: Set[asyncio.Task] = set()

    def record(self, email: str, success: bool, client: ClientInfo) -> None:
        entry = LoginHistoryEntry(
            email=email.strip().lower(),
            success=success,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            device_info=client.to_json(),
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller): write inline, still never raising
            self._write(entry)
            return
        task = loop.create_task(asyncio.to_thread(self._write, entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _write(self, entry: LoginHistoryEntry) -> None:
        try:
            self.store.add_login_history(entry)
        except Exception as exc:
            logger.warning(
                "login_history_write_failed",
                success=entry.success,
                error=str(exc),
            )

    async def drain(self) -> None:
        """Wait for scheduled writes to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
