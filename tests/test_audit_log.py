"""Tests for the security audit log."""

import threading
from datetime import timedelta

import pytest

from storeguard.service.audit import SecurityAuditLog
from storeguard.storage.memory import MemoryStore
from storeguard.storage.models import (
    AuditAction,
    AuditEvent,
    AuditOutcome,
    ClientInfo,
    Identity,
)

CLIENT = ClientInfo(ip="10.0.0.1", user_agent="pytest")


class FailingRepository(MemoryStore):
    def save_audit_event(self, event):
        raise RuntimeError("database unavailable")


class BlockingRepository(MemoryStore):
    """Holds every write until released."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def save_audit_event(self, event):
        self.release.wait(5)
        super().save_audit_event(event)


class TestRecording:
    def test_record_is_buffered_until_flush(self, audit, store):
        event = audit.record(AuditAction.LOGIN, description="login succeeded", client=CLIENT)

        assert store.audit_events == []
        assert audit.pending() == 1
        assert audit.flush()
        assert store.audit_events == [event]
        assert audit.pending() == 0

    def test_record_captures_client_and_entity(self, audit, store):
        identity = Identity(id="id-1", email="a@example.com")

        event = audit.record(
            AuditAction.USER_UPDATED,
            description="profile updated",
            identity_id=identity.id,
            client=CLIENT,
            entity=identity,
            metadata={"field": "email"},
        )

        assert event.client_ip == "10.0.0.1"
        assert event.user_agent == "pytest"
        assert (event.entity_type, event.entity_id) == ("Identity", "id-1")
        assert event.metadata == {"field": "email"}
        assert event.outcome == AuditOutcome.SUCCESS

    def test_error_detail_is_truncated(self, audit):
        event = audit.record_failure(
            AuditAction.SYSTEM_ERROR, description="boom", error_detail="x" * 2000
        )

        assert len(event.error_detail) == 500
        assert event.outcome == AuditOutcome.FAILURE

    def test_security_event_has_warning_outcome(self, audit):
        event = audit.record_security_event("suspicious", client=CLIENT)

        assert event.action == AuditAction.SECURITY_EVENT
        assert event.outcome == AuditOutcome.WARNING
        assert event.is_security_event


class TestBufferBound:
    def test_overflow_drops_oldest(self, store, clock):
        audit = SecurityAuditLog(store, queue_size=3, now=clock)
        events = [
            audit.record(AuditAction.LOGIN, description=f"login {i}") for i in range(5)
        ]

        assert audit.dropped == 2
        audit.flush()
        assert [e.id for e in store.audit_events] == [e.id for e in events[2:]]

    def test_queue_size_must_be_positive(self, store):
        with pytest.raises(ValueError):
            SecurityAuditLog(store, queue_size=0)


class TestPersistenceFailures:
    def test_repository_errors_are_swallowed(self, clock):
        audit = SecurityAuditLog(FailingRepository(), now=clock)
        audit.record(AuditAction.LOGIN, description="login succeeded")

        assert audit.flush()
        assert audit.pending() == 0

    def test_writer_threads_survive_repository_errors(self, clock):
        audit = SecurityAuditLog(FailingRepository(), writers=2, now=clock)
        audit.start()
        try:
            for i in range(10):
                audit.record(AuditAction.LOGIN, description=f"login {i}")
            assert audit.flush(timeout=5)
        finally:
            audit.stop()


class TestWriterThreads:
    def test_started_writers_persist_events(self, store, clock):
        audit = SecurityAuditLog(store, writers=2, now=clock)
        audit.start()
        try:
            for i in range(20):
                audit.record(AuditAction.LOGIN, description=f"login {i}")
            assert audit.flush(timeout=5)
        finally:
            audit.stop()

        assert len(store.audit_events) == 20
        assert not audit.running

    def test_stop_drains_buffer(self, store, clock):
        audit = SecurityAuditLog(store, now=clock)
        audit.start()
        for i in range(5):
            audit.record(AuditAction.LOGIN, description=f"login {i}")
        audit.stop()

        assert len(store.audit_events) == 5

    def test_record_does_not_wait_for_repository(self, clock):
        repository = BlockingRepository()
        audit = SecurityAuditLog(repository, now=clock)
        audit.start()
        try:
            for i in range(3):
                audit.record(AuditAction.LOGIN, description=f"login {i}")
            assert audit.pending() == 3
        finally:
            repository.release.set()
            audit.stop()

        assert len(repository.audit_events) == 3


class TestTrack:
    def test_success_records_subject(self, audit, store):
        identity = Identity(id="id-1", email="a@example.com")

        with audit.track(AuditAction.REGISTER, description="identity registered", client=CLIENT) as op:
            op.entity(identity, identity_id=identity.id)
        audit.flush()

        [event] = store.audit_events
        assert event.outcome == AuditOutcome.SUCCESS
        assert event.identity_id == "id-1"
        assert event.entity_type == "Identity"

    def test_failure_is_recorded_and_reraised(self, audit, store):
        with pytest.raises(KeyError):
            with audit.track(AuditAction.ADMIN_ACTION, description="role change"):
                raise KeyError("missing")
        audit.flush()

        [event] = store.audit_events
        assert event.outcome == AuditOutcome.FAILURE
        assert event.description == "role change failed"
        assert "missing" in event.error_detail


class TestQueries:
    def test_count_recent_failures_includes_unpersisted_events(self, audit):
        for _ in range(3):
            audit.record_failure(
                AuditAction.LOGIN_FAILED, description="failed login attempt", client=CLIENT
            )
        audit.flush()
        audit.record_failure(
            AuditAction.LOGIN_FAILED, description="failed login attempt", client=CLIENT
        )

        assert audit.count_recent_failures("10.0.0.1", timedelta(minutes=15)) == 4

    def test_count_recent_failures_respects_window_and_ip(self, audit, clock):
        audit.record_failure(AuditAction.LOGIN_FAILED, description="old", client=CLIENT)
        clock.advance(minutes=20)
        audit.record_failure(AuditAction.LOGIN_FAILED, description="new", client=CLIENT)
        audit.record_failure(
            AuditAction.LOGIN_FAILED, description="other", client=ClientInfo(ip="10.0.0.2")
        )
        audit.record(AuditAction.LOGIN, description="ok", client=CLIENT)

        assert audit.count_recent_failures("10.0.0.1", timedelta(minutes=15)) == 1
        assert audit.count_recent_failures(None, timedelta(minutes=15)) == 0

    def test_recent_security_events_filters_actions(self, audit):
        audit.record(AuditAction.LOGIN, description="ok")
        audit.record_failure(AuditAction.LOGIN_FAILED, description="bad password")
        audit.record_failure(AuditAction.UNAUTHORIZED_ACCESS, description="denied")
        audit.record_security_event("reuse")
        audit.flush()

        events = audit.recent_security_events()

        assert {e.action for e in events} == {
            AuditAction.LOGIN_FAILED,
            AuditAction.UNAUTHORIZED_ACCESS,
            AuditAction.SECURITY_EVENT,
        }

    def test_query_returns_newest_first(self, audit, clock):
        first = audit.record(AuditAction.LOGIN, description="first", identity_id="u1")
        clock.advance(seconds=1)
        second = audit.record(AuditAction.LOGIN, description="second", identity_id="u1")
        audit.record(AuditAction.LOGIN, description="other", identity_id="u2")
        audit.flush()

        events = audit.query(identity_id="u1", action=AuditAction.LOGIN)

        assert [e.id for e in events] == [second.id, first.id]

    def test_events_for_entity(self, audit):
        identity = Identity(id="id-9", email="x@example.com")
        audit.record(AuditAction.USER_UPDATED, description="updated", entity=identity)
        audit.record(AuditAction.LOGIN, description="unrelated")
        audit.flush()

        [event] = audit.events_for_entity(identity)
        assert event.entity_id == "id-9"

    def test_purge_older_than(self, audit, store, clock):
        audit.record(AuditAction.LOGIN, description="old")
        clock.advance(days=100)
        kept = audit.record(AuditAction.LOGIN, description="new")
        audit.flush()

        removed = audit.purge_older_than(clock() - timedelta(days=90))

        assert removed == 1
        assert store.audit_events == [kept]


def test_event_serializes_enums_as_strings():
    event = AuditEvent(
        action=AuditAction.LOGIN, outcome=AuditOutcome.SUCCESS, description="ok"
    )
    data = event.to_dict()
    assert data["action"] == "LOGIN"
    assert data["outcome"] == "SUCCESS"
    assert data["metadata"] == {}
