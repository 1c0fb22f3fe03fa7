from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from storeguard.storage.errors import EMAIL_UNIQUE, TOKEN_HASH_UNIQUE, ConstraintViolation
from storeguard.storage.models import (
    AuditAction,
    AuditEvent,
    Identity,
    RefreshCredential,
    normalize_email,
)


class MemoryStore:
    """In-process backing store for identities, refresh credentials and audit events.

    All mutations happen under one re-entrant lock so compound operations
    (insert-with-eviction, compare-and-revoke) are atomic. Returned objects are
    copies; callers cannot mutate stored state directly.
    """

    def __init__(self) -> None:
        self.identities: Dict[str, Identity] = {}
        self.passwords: Dict[str, str] = {}
        self._email_index: Dict[str, str] = {}
        self.credentials: Dict[str, RefreshCredential] = {}
        self._identity_credentials: Dict[str, Set[str]] = {}
        self.audit_events: List[AuditEvent] = []
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # identities ----------------------------------------------------------

    def create_identity(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        enabled: bool = True,
    ) -> Identity:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation(
                    "email already exists", constraint=EMAIL_UNIQUE, field="email"
                )
            identity = Identity(
                id=str(uuid.uuid4()), email=normalized, role=role, enabled=enabled
            )
            self.identities[identity.id] = identity
            self._email_index[normalized] = identity.id
            self.passwords[identity.id] = password_hash
            return replace(identity)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return replace(identity) if identity else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._data_lock:
            identity_id = self._email_index.get(normalize_email(email))
            if identity_id is None:
                return None
            return replace(self.identities[identity_id])

    def get_password_hash(self, identity_id: str) -> Optional[str]:
        with self._data_lock:
            return self.passwords.get(identity_id)

    def set_identity_enabled(self, identity_id: str, enabled: bool) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.enabled = enabled
            return replace(identity)

    # refresh credentials -------------------------------------------------

    def get_credential(self, token_hash: str) -> Optional[RefreshCredential]:
        with self._data_lock:
            credential = self.credentials.get(token_hash)
            return replace(credential) if credential else None

    def _active_for(self, identity_id: str, now: datetime) -> List[RefreshCredential]:
        hashes = self._identity_credentials.get(identity_id, set())
        active = [
            self.credentials[h] for h in hashes if self.credentials[h].is_active(now)
        ]
        return sorted(active, key=lambda c: c.issued_at)

    def insert_credential(
        self, credential: RefreshCredential, *, max_active: int, now: datetime
    ) -> List[RefreshCredential]:
        """Insert ``credential``, first revoking the oldest active ones so that at
        most ``max_active`` remain afterwards. Returns the evicted credentials."""
        with self._data_lock:
            if credential.token_hash in self.credentials:
                raise ConstraintViolation(
                    "refresh credential already exists", constraint=TOKEN_HASH_UNIQUE
                )
            active = self._active_for(credential.identity_id, now)
            overflow = len(active) - max_active + 1
            evicted: List[RefreshCredential] = []
            for oldest in active[: max(0, overflow)]:
                oldest.revoked = True
                oldest.revoked_at = now
                evicted.append(replace(oldest))
            stored = replace(credential, value=None)
            self.credentials[stored.token_hash] = stored
            self._identity_credentials.setdefault(stored.identity_id, set()).add(
                stored.token_hash
            )
            return evicted

    def revoke_credential(
        self, token_hash: str, revoked_at: datetime
    ) -> Optional[RefreshCredential]:
        """Compare-and-set ACTIVE -> REVOKED. Returns the credential only when this
        call performed the transition."""
        with self._data_lock:
            credential = self.credentials.get(token_hash)
            if credential is None or credential.revoked:
                return None
            credential.revoked = True
            credential.revoked_at = revoked_at
            return replace(credential)

    def revoke_identity_credentials(self, identity_id: str, revoked_at: datetime) -> int:
        with self._data_lock:
            count = 0
            for token_hash in self._identity_credentials.get(identity_id, set()):
                credential = self.credentials[token_hash]
                if credential.is_active(revoked_at):
                    credential.revoked = True
                    credential.revoked_at = revoked_at
                    count += 1
            return count

    def list_active_credentials(
        self, identity_id: str, now: datetime
    ) -> List[RefreshCredential]:
        with self._data_lock:
            return [replace(c) for c in self._active_for(identity_id, now)]

    def delete_stale_credentials(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                c
                for c in self.credentials.values()
                if c.expires_at < cutoff
                or (c.revoked and c.revoked_at is not None and c.revoked_at < cutoff)
            ]
            for credential in stale:
                del self.credentials[credential.token_hash]
                owned = self._identity_credentials.get(credential.identity_id)
                if owned is not None:
                    owned.discard(credential.token_hash)
                    if not owned:
                        del self._identity_credentials[credential.identity_id]
            return len(stale)

    # audit events --------------------------------------------------------

    def save_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)

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
    ) -> List[AuditEvent]:
        wanted = set(actions) if actions is not None else None
        with self._data_lock:
            matches = [
                e
                for e in self.audit_events
                if (identity_id is None or e.identity_id == identity_id)
                and (wanted is None or e.action in wanted)
                and (client_ip is None or e.client_ip == client_ip)
                and (entity_type is None or e.entity_type == entity_type)
                and (entity_id is None or e.entity_id == entity_id)
                and (since is None or e.occurred_at >= since)
            ]
        matches.sort(key=lambda e: e.occurred_at, reverse=True)
        return matches[:limit]

    def delete_audit_events_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            kept = [e for e in self.audit_events if e.occurred_at >= cutoff]
            removed = len(self.audit_events) - len(kept)
            self.audit_events = kept
            return removed

