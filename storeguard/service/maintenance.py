"""Scheduled security housekeeping.

Runs inside the application's event loop and hands each job to a worker
thread:
- clearing oversized rate-limit tables (hourly)
- deleting stale refresh credentials (daily, 30 day retention)
- purging old audit events (daily, 90 day retention)
- reporting recent security events to the log (daily)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from storeguard.config import Settings
from storeguard.logging import get_logger
from storeguard.service.audit import SecurityAuditLog
from storeguard.service.rate_limit import RateLimiter
from storeguard.service.sessions import SessionStore
from storeguard.storage.models import utcnow

logger = get_logger(__name__)

DEFAULT_TICK_SECONDS = 60


@dataclass
class _Job:
    name: str
    interval: float
    run: Callable[[], int]
    last_run: float = field(default=0.0)

    def due(self, now: float) -> bool:
        return not self.last_run or (now - self.last_run) >= self.interval


class SecurityMaintenance:
    def __init__(
        self,
        rate_limiter: RateLimiter,
        sessions: SessionStore,
        audit: SecurityAuditLog,
        *,
        bucket_cleanup_interval: float = 3600,
        credential_cleanup_interval: float = 86400,
        audit_purge_interval: float = 86400,
        security_report_interval: float = 86400,
        credential_retention: timedelta = timedelta(days=30),
        audit_retention: timedelta = timedelta(days=90),
        report_window: timedelta = timedelta(hours=24),
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.audit = audit
        self.credential_retention = credential_retention
        self.audit_retention = audit_retention
        self.report_window = report_window
        self.tick_seconds = tick_seconds
        self._now = now
        self._jobs: List[_Job] = [
            _Job("rate_limit_cleanup", bucket_cleanup_interval, self.cleanup_rate_limits),
            _Job("credential_cleanup", credential_cleanup_interval, self.cleanup_credentials),
            _Job("audit_purge", audit_purge_interval, self.purge_audit_events),
            _Job("security_report", security_report_interval, self.report_security_events),
        ]
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        rate_limiter: RateLimiter,
        sessions: SessionStore,
        audit: SecurityAuditLog,
    ) -> "SecurityMaintenance":
        return cls(
            rate_limiter,
            sessions,
            audit,
            bucket_cleanup_interval=settings.bucket_cleanup_interval_seconds,
            credential_cleanup_interval=settings.credential_cleanup_interval_seconds,
            audit_purge_interval=settings.audit_purge_interval_seconds,
            security_report_interval=settings.security_report_interval_seconds,
            credential_retention=timedelta(days=settings.refresh_token_retention_days),
            audit_retention=timedelta(days=settings.audit_retention_days),
            report_window=timedelta(hours=settings.security_report_window_hours),
        )

    # jobs --------------------------------------------------------------------

    def cleanup_rate_limits(self) -> int:
        return self.rate_limiter.cleanup()

    def cleanup_credentials(self) -> int:
        return self.sessions.cleanup(self._now() - self.credential_retention)

    def purge_audit_events(self) -> int:
        return self.audit.purge_older_than(self._now() - self.audit_retention)

    def report_security_events(self) -> int:
        events = self.audit.recent_security_events(self.report_window)
        hours = int(self.report_window.total_seconds() // 3600)
        if not events:
            logger.info("security_report", window_hours=hours, events=0)
            return 0
        logger.warning("security_report", window_hours=hours, events=len(events))
        for event in events:
            logger.warning(
                "security_report_event",
                action=event.action.value,
                occurred_at=event.occurred_at.isoformat(),
                client_ip=event.client_ip,
                identity_id=event.identity_id,
                description=event.description,
            )
        return len(events)

    def run_once(self) -> Dict[str, int]:
        """Run every job immediately; used by operators and tests."""
        return {job.name: self._run_job(job) for job in self._jobs}

    def _run_job(self, job: _Job) -> int:
        job.last_run = time.monotonic()
        try:
            result = job.run()
        except Exception as exc:
            logger.error("maintenance_job_failed", job=job.name, error=str(exc))
            return -1
        logger.info("maintenance_job_complete", job=job.name, result=result)
        return result

    # background loop ---------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("maintenance_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("maintenance_started", tick_seconds=self.tick_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("maintenance_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            now = time.monotonic()
            for job in self._jobs:
                if job.due(now):
                    await asyncio.to_thread(self._run_job, job)
            await asyncio.sleep(self.tick_seconds)
