from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List

from sessiongate.config import Settings
from sessiongate.logging import get_logger
from sessiongate.service.sessions import SessionStore

logger = get_logger(__name__)

_SUSPICIOUS_LOOKBACK = timedelta(hours=24)


@dataclass
class MaintenanceReport:
    purged: int = 0
    suspicious_ips: List[str] = field(default_factory=list)
    deactivated: int = 0

    def as_dict(self) -> Dict[str, object]:
        return {
            "purged": self.purged,
            "suspiciousIps": list(self.suspicious_ips),
            "deactivated": self.deactivated,
        }


class SessionMaintenance:
    """Housekeeping over stored sessions: purging, per-user caps and IP flooding."""

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._now = now or (lambda: datetime.now(timezone.utc))

    def cleanup_expired_sessions(self) -> int:
        """Delete expired sessions and inactive ones untouched past the retention window."""
        now = self._now()
        retention = timedelta(hours=self.settings.inactive_session_retention_hours)
        purged = self.store.purge_sessions(now=now, inactive_before=now - retention)
        if purged:
            logger.info("sessions_purged", count=purged)
        return purged

    def cleanup_duplicate_sessions(self, user_id: str, max_sessions: int | None = None) -> int:
        """Keep only the newest ``max_sessions`` active sessions of a user."""
        limit = max_sessions if max_sessions is not None else self.settings.max_sessions_per_user
        if limit <= 0:
            return 0
        now = self._now()
        sessions = self.store.list_active_sessions(now=now, user_id=user_id)
        excess = sessions[limit:]
        for sess in excess:
            self.store.deactivate_session(sess.id, now=now)
        if excess:
            logger.info("user_sessions_trimmed", user_id=user_id, deactivated=len(excess))
        return len(excess)

    def detect_suspicious_sessions(self) -> MaintenanceReport:
        """Flag IPs that opened too many sessions in the last 24h.

        All but the newest ``suspicious_ip_keep_sessions`` sessions from each
        flagged IP are deactivated.
        """
        now = self._now()
        report = MaintenanceReport()
        recent = self.store.list_active_sessions(now=now, created_after=now - _SUSPICIOUS_LOOKBACK)
        per_ip = Counter(s.ip_address for s in recent if s.ip_address)
        threshold = self.settings.suspicious_ip_session_threshold
        keep = self.settings.suspicious_ip_keep_sessions
        for ip, count in per_ip.items():
            if count <= threshold:
                continue
            report.suspicious_ips.append(ip)
            # list_active_sessions is newest first
            from_ip = self.store.list_active_sessions(now=now, ip_address=ip)
            for sess in from_ip[keep:]:
                if self.store.deactivate_session(sess.id, now=now):
                    report.deactivated += 1
            logger.warning(
                "suspicious_ip_sessions",
                ip_address=ip,
                session_count=count,
                kept=min(keep, len(from_ip)),
            )
        return report

    def run_once(self) -> MaintenanceReport:
        """Full pass for the admin cleanup endpoint, including the purge."""
        purged = self.cleanup_expired_sessions()
        report = self.detect_suspicious_sessions()
        report.purged = purged
        return report

    def run_scheduled(self) -> MaintenanceReport:
        """Pass for the background loop. Rows are never deleted here; deactivated
        sessions stay for audit until an admin runs the cleanup."""
        return self.detect_suspicious_sessions()

    async def run_forever(self, interval_seconds: int) -> None:
        """Background loop for the app lifespan; cancelled on shutdown."""
        interval = max(interval_seconds, 60)
        try:
            while True:
                try:
                    await asyncio.to_thread(self.run_scheduled)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning("session_maintenance_failed", error=str(exc))
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("session_maintenance_cancelled")
