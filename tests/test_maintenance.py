"""Tests for scheduled security housekeeping."""

import asyncio
from datetime import timedelta

import pytest

from storeguard.service.maintenance import SecurityMaintenance
from storeguard.service.rate_limit import NANOS_PER_SECOND, EndpointClass, InMemoryRateLimiter
from storeguard.storage.models import AuditAction


class ExplodingLimiter:
    def cleanup(self):
        raise RuntimeError("boom")


@pytest.fixture
def limiter(settings):
    return InMemoryRateLimiter.from_settings(settings)


@pytest.fixture
def maintenance(limiter, sessions, audit, clock):
    return SecurityMaintenance(limiter, sessions, audit, now=clock, tick_seconds=0.01)


class TestJobs:
    def test_run_once_runs_every_job(self, maintenance, store, sessions, audit, clock):
        identity = store.create_identity("old@example.com", "hash")
        sessions.create(identity)
        audit.record_failure(AuditAction.LOGIN_FAILED, description="failed login attempt")
        audit.flush()
        clock.advance(days=100)
        audit.record_security_event("fresh")
        audit.flush()

        results = maintenance.run_once()

        assert results == {
            "rate_limit_cleanup": 0,
            "credential_cleanup": 1,
            "audit_purge": 1,
            "security_report": 1,
        }
        assert [e.description for e in store.audit_events] == ["fresh"]

    def test_failing_job_does_not_stop_others(self, sessions, audit, clock):
        maintenance = SecurityMaintenance(ExplodingLimiter(), sessions, audit, now=clock)

        results = maintenance.run_once()

        assert results["rate_limit_cleanup"] == -1
        assert results["security_report"] == 0

    def test_rate_limit_cleanup_drops_idle_buckets(self, settings, sessions, audit, clock):
        ticks = [0]
        limiter = InMemoryRateLimiter.from_settings(settings, clock=lambda: ticks[0])
        maintenance = SecurityMaintenance(limiter, sessions, audit, now=clock)
        limiter.try_consume(EndpointClass.AUTH, "ip")
        limiter.try_consume(EndpointClass.GENERAL, "ip")

        assert maintenance.cleanup_rate_limits() == 0
        ticks[0] += 60 * NANOS_PER_SECOND
        assert maintenance.cleanup_rate_limits() == 2
        assert limiter.bucket_count(EndpointClass.AUTH) == 0

    def test_from_settings_uses_retention(self, settings, limiter, sessions, audit):
        maintenance = SecurityMaintenance.from_settings(settings, limiter, sessions, audit)

        assert maintenance.credential_retention == timedelta(days=30)
        assert maintenance.audit_retention == timedelta(days=90)
        assert maintenance.report_window == timedelta(hours=24)


class TestLoop:
    async def test_start_runs_due_jobs_and_stops(self, maintenance, store, audit):
        audit.record_security_event("seen by report")
        audit.flush()

        await maintenance.start()
        for _ in range(100):
            if all(job.last_run for job in maintenance._jobs):
                break
            await asyncio.sleep(0.01)
        await maintenance.stop()

        assert all(job.last_run for job in maintenance._jobs)
        assert maintenance._task is None

    async def test_double_start_is_ignored(self, maintenance):
        await maintenance.start()
        task = maintenance._task
        await maintenance.start()

        assert maintenance._task is task
        await maintenance.stop()
