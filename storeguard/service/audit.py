from __future__ import annotations

import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Iterable, Iterator, List, Optional, Protocol

from storeguard.logging import get_logger
from storeguard.storage.models import (
    SECURITY_ACTIONS,
    UNKNOWN_CLIENT,
    AuditAction,
    AuditEvent,
    AuditOutcome,
    Auditable,
    ClientInfo,
    utcnow,
)

logger = get_logger(__name__)

_MAX_ERROR_DETAIL = 500


class AuditRepository(Protocol):
    def save_audit_event(self, event: AuditEvent) -> None: ...

    def list_audit_events(
        self,
        *,
        identity_id: Optional[str] = None,
        actions: Optional[Iterable[AuditAction]] = None,
        client_ip: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]: ...

    def delete_audit_events_before(self, cutoff: datetime) -> int: ...


class TrackedOperation:
    """Handle yielded by :meth:`SecurityAuditLog.track` to name the operation's subject."""

    def __init__(self, identity_id: Optional[str]) -> None:
        self.identity_id = identity_id
        self.subject: Optional[Auditable] = None
        self.metadata: Dict[str, Any] = {}

    def entity(self, subject: Auditable, *, identity_id: Optional[str] = None) -> None:
        self.subject = subject
        if identity_id is not None:
            self.identity_id = identity_id


class SecurityAuditLog:
    """Append-only audit trail with asynchronous persistence.

    ``append`` only places the already-built immutable event in a bounded
    in-memory buffer; writer threads persist it. When the buffer is full the
    oldest pending event is dropped and a warning is logged, so callers never
    block on a slow or failing repository. Persistence errors are logged and
    swallowed.
    """

    def __init__(
        self,
        repository: AuditRepository,
        *,
        queue_size: int = 1000,
        writers: int = 1,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be positive")
        self.repository = repository
        self.queue_size = queue_size
        self.writers = max(1, writers)
        self._now = now
        self._buffer: Deque[AuditEvent] = deque()
        self._in_flight: Dict[str, AuditEvent] = {}
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._drained = threading.Condition(self._lock)
        self._threads: List[threading.Thread] = []
        self._running = False
        self.dropped = 0

    # lifecycle -------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._threads = [
                threading.Thread(
                    target=self._writer_loop, name=f"audit-writer-{i}", daemon=True
                )
                for i in range(self.writers)
            ]
        for thread in self._threads:
            thread.start()
        logger.info("audit_writer_started", writers=self.writers, queue_size=self.queue_size)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the writers after they drain what is already buffered."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._not_empty.notify_all()
            threads, self._threads = self._threads, []
        for thread in threads:
            thread.join(timeout)
        pending = self.pending()
        if pending:
            logger.warning("audit_writer_stopped_with_pending", pending=pending)
        else:
            logger.info("audit_writer_stopped")

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every buffered event is persisted.

        Without running writers the buffer is drained on the calling thread.
        Returns False if events are still pending after ``timeout``.
        """
        if not self._running:
            while True:
                event = self._take_nowait()
                if event is None:
                    return True
                self._persist(event)
                self._finish(event)
        with self._drained:
            return self._drained.wait_for(
                lambda: not self._buffer and not self._in_flight, timeout
            )

    def pending(self) -> int:
        with self._lock:
            return len(self._buffer) + len(self._in_flight)

    # writing ---------------------------------------------------------------

    def append(self, event: AuditEvent) -> None:
        with self._lock:
            if len(self._buffer) >= self.queue_size:
                dropped = self._buffer.popleft()
                self.dropped += 1
                logger.warning(
                    "audit_queue_overflow",
                    dropped_event_id=dropped.id,
                    dropped_action=dropped.action.value,
                    queue_size=self.queue_size,
                    dropped_total=self.dropped,
                )
            self._buffer.append(event)
            self._not_empty.notify()

    def _take_nowait(self) -> Optional[AuditEvent]:
        with self._lock:
            if not self._buffer:
                return None
            event = self._buffer.popleft()
            self._in_flight[event.id] = event
            return event

    def _finish(self, event: AuditEvent) -> None:
        with self._lock:
            self._in_flight.pop(event.id, None)
            if not self._buffer and not self._in_flight:
                self._drained.notify_all()

    def _writer_loop(self) -> None:
        while True:
            with self._not_empty:
                self._not_empty.wait_for(lambda: self._buffer or not self._running)
                if not self._buffer:
                    return
                event = self._buffer.popleft()
                self._in_flight[event.id] = event
            self._persist(event)
            self._finish(event)

    def _persist(self, event: AuditEvent) -> None:
        try:
            self.repository.save_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_persist_failed",
                event_id=event.id,
                action=event.action.value,
                error=str(exc),
            )

    def record(
        self,
        action: AuditAction,
        *,
        description: str,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        identity_id: Optional[str] = None,
        client: ClientInfo = UNKNOWN_CLIENT,
        entity: Optional[Auditable] = None,
        error_detail: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        entity_type, entity_id = entity.audit_entity() if entity is not None else (None, None)
        event = AuditEvent(
            action=action,
            outcome=outcome,
            description=description,
            identity_id=identity_id,
            client_ip=client.ip,
            user_agent=client.user_agent,
            error_detail=error_detail[:_MAX_ERROR_DETAIL] if error_detail else None,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=dict(metadata or {}),
            occurred_at=self._now(),
        )
        self.append(event)
        return event

    def record_failure(
        self,
        action: AuditAction,
        *,
        description: str,
        error_detail: Optional[str] = None,
        **kwargs: Any,
    ) -> AuditEvent:
        return self.record(
            action,
            description=description,
            outcome=AuditOutcome.FAILURE,
            error_detail=error_detail,
            **kwargs,
        )

    def record_security_event(
        self,
        description: str,
        *,
        identity_id: Optional[str] = None,
        client: ClientInfo = UNKNOWN_CLIENT,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        logger.warning(
            "security_event",
            description=description,
            identity_id=identity_id,
            client_ip=client.ip,
        )
        return self.record(
            AuditAction.SECURITY_EVENT,
            description=description,
            outcome=AuditOutcome.WARNING,
            identity_id=identity_id,
            client=client,
            metadata=metadata,
        )

    @contextmanager
    def track(
        self,
        action: AuditAction,
        *,
        description: str,
        identity_id: Optional[str] = None,
        client: ClientInfo = UNKNOWN_CLIENT,
    ) -> Iterator[TrackedOperation]:
        """Audit the wrapped block: a SUCCESS event when it completes, a FAILURE
        event carrying the error when it raises. The exception propagates.

        ::

            with audit.track(AuditAction.REGISTER, description="identity registered") as op:
                identity = directory.create_identity(...)
                op.entity(identity, identity_id=identity.id)
        """
        op = TrackedOperation(identity_id)
        try:
            yield op
        except Exception as exc:
            self.record_failure(
                action,
                description=f"{description} failed",
                error_detail=str(exc) or type(exc).__name__,
                identity_id=op.identity_id,
                client=client,
                entity=op.subject,
                metadata=op.metadata,
            )
            raise
        self.record(
            action,
            description=description,
            identity_id=op.identity_id,
            client=client,
            entity=op.subject,
            metadata=op.metadata,
        )

    # reading ---------------------------------------------------------------

    def _buffered(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._buffer) + list(self._in_flight.values())

    def count_recent_failures(
        self, client_ip: Optional[str], window: timedelta, *, limit: int = 1000
    ) -> int:
        """Failed logins from ``client_ip`` within ``window``, including events not
        yet persisted."""
        if not client_ip:
            return 0
        since = self._now() - window
        # Snapshot the buffer before reading the repository so an event being
        # persisted concurrently is seen in at least one of the two.
        seen = {
            e.id
            for e in self._buffered()
            if e.action == AuditAction.LOGIN_FAILED
            and e.client_ip == client_ip
            and e.occurred_at >= since
        }
        try:
            stored = self.repository.list_audit_events(
                actions=[AuditAction.LOGIN_FAILED],
                client_ip=client_ip,
                since=since,
                limit=limit,
            )
        except Exception as exc:
            logger.error("audit_failure_count_failed", client_ip=client_ip, error=str(exc))
            stored = []
        seen.update(e.id for e in stored)
        return len(seen)

    def query(
        self,
        *,
        identity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        return self.repository.list_audit_events(
            identity_id=identity_id,
            actions=[action] if action is not None else None,
            entity_type=entity_type,
            entity_id=entity_id,
            limit=limit,
        )

    def events_for_entity(self, subject: Auditable, *, limit: int = 100) -> List[AuditEvent]:
        entity_type, entity_id = subject.audit_entity()
        return self.query(entity_type=entity_type, entity_id=entity_id, limit=limit)

    def recent_security_events(
        self, window: timedelta = timedelta(hours=24), *, limit: int = 500
    ) -> List[AuditEvent]:
        return self.repository.list_audit_events(
            actions=SECURITY_ACTIONS, since=self._now() - window, limit=limit
        )

    def purge_older_than(self, cutoff: datetime) -> int:
        removed = self.repository.delete_audit_events_before(cutoff)
        logger.info("audit_purge_complete", removed=removed, cutoff=cutoff.isoformat())
        return removed
