"""Concurrent rotation of one refresh credential.

Only one caller may win the ACTIVE -> REVOKED transition; every other caller
must be treated exactly like a replay of a rotated credential.
"""

import threading

from storeguard.service.errors import SecurityViolation
from storeguard.storage.models import AuditAction


def test_parallel_rotation_has_single_winner(sessions, store, audit):
    identity = store.create_identity("race@example.com", "hash")
    credential = sessions.create(identity)
    barrier = threading.Barrier(8)
    successes = []
    violations = []
    results_lock = threading.Lock()

    def rotate():
        barrier.wait()
        try:
            replacement = sessions.rotate(credential.value)
        except SecurityViolation as exc:
            with results_lock:
                violations.append(exc)
        else:
            with results_lock:
                successes.append(replacement)

    threads = [threading.Thread(target=rotate) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(successes) == 1
    assert len(violations) == 7
    audit.flush()
    assert len([e for e in store.audit_events if e.action == AuditAction.TOKEN_REFRESH]) == 1


def test_parallel_logins_respect_active_limit(sessions, store):
    identity = store.create_identity("busy@example.com", "hash")
    barrier = threading.Barrier(12)

    def login():
        barrier.wait()
        sessions.create(identity)

    threads = [threading.Thread(target=login) for _ in range(12)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(sessions.active_credentials(identity.id)) == 5
