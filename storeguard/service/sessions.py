"""Refresh credential lifecycle.

A credential is ACTIVE until it is revoked (terminal) or passes its expiry
(terminal, evaluated lazily). Rotation revokes the presented credential and
issues a replacement; presenting a revoked credential to ``rotate`` is treated
as theft and revokes every credential of the identity. Explicit revocation
(logout) of an already revoked credential is a silent no-op.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from storeguard.config import Settings
from storeguard.logging import get_logger
from storeguard.service.audit import SecurityAuditLog
from storeguard.service.errors import (
    CredentialExpired,
    CredentialNotFound,
    CredentialRevoked,
    SecurityViolation,
)
from storeguard.storage.models import (
    UNKNOWN_CLIENT,
    AuditAction,
    ClientInfo,
    Identity,
    RefreshCredential,
    hash_token,
    utcnow,
)

logger = get_logger(__name__)


class CredentialRepository(Protocol):
    def get_credential(self, token_hash: str) -> Optional[RefreshCredential]: ...

    def insert_credential(
        self, credential: RefreshCredential, *, max_active: int, now: datetime
    ) -> List[RefreshCredential]: ...

    def revoke_credential(
        self, token_hash: str, revoked_at: datetime
    ) -> Optional[RefreshCredential]: ...

    def revoke_identity_credentials(self, identity_id: str, revoked_at: datetime) -> int: ...

    def list_active_credentials(
        self, identity_id: str, now: datetime
    ) -> List[RefreshCredential]: ...

    def delete_stale_credentials(self, cutoff: datetime) -> int: ...


class IdentityLookup(Protocol):
    def get_identity(self, identity_id: str) -> Optional[Identity]: ...


class SessionStore:
    def __init__(
        self,
        repository: CredentialRepository,
        identities: IdentityLookup,
        audit: SecurityAuditLog,
        *,
        ttl: timedelta = timedelta(days=7),
        max_active: int = 5,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_active < 1:
            raise ValueError("max_active must be at least 1")
        self.repository = repository
        self.identities = identities
        self.audit = audit
        self.ttl = ttl
        self.max_active = max_active
        self._now = now

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        repository: CredentialRepository,
        identities: IdentityLookup,
        audit: SecurityAuditLog,
        *,
        now: Callable[[], datetime] = utcnow,
    ) -> "SessionStore":
        return cls(
            repository,
            identities,
            audit,
            ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            max_active=settings.max_active_refresh_tokens,
            now=now,
        )

    def create(self, identity: Identity, client: ClientInfo = UNKNOWN_CLIENT) -> RefreshCredential:
        """Issue a new ACTIVE credential, evicting the oldest active ones when the
        identity is at its limit. The returned instance carries the raw value."""
        now = self._now()
        credential = RefreshCredential.issue(identity.id, ttl=self.ttl, now=now, client=client)
        evicted = self.repository.insert_credential(
            credential, max_active=self.max_active, now=now
        )
        for old in evicted:
            logger.info(
                "refresh_credential_evicted",
                identity_id=identity.id,
                credential_id=old.id,
                issued_at=old.issued_at.isoformat(),
            )
        return credential

    def _lookup(self, value: str) -> RefreshCredential:
        credential = self.repository.get_credential(hash_token(value)) if value else None
        if credential is None:
            raise CredentialNotFound("refresh credential not found")
        return credential

    def verify(self, value: str) -> Tuple[RefreshCredential, Identity]:
        credential = self._lookup(value)
        if credential.is_expired(self._now()):
            raise CredentialExpired("refresh credential expired")
        if credential.revoked:
            raise CredentialRevoked("refresh credential revoked")
        identity = self.identities.get_identity(credential.identity_id)
        if identity is None:
            raise CredentialNotFound("identity for refresh credential not found")
        return credential, identity

    def rotate(self, old_value: str, client: ClientInfo = UNKNOWN_CLIENT) -> RefreshCredential:
        return self.exchange(old_value, client)[0]

    def exchange(
        self, old_value: str, client: ClientInfo = UNKNOWN_CLIENT
    ) -> Tuple[RefreshCredential, Identity]:
        """Rotate ``old_value`` and return the replacement with its enabled owner."""
        credential = self._lookup(old_value)
        if credential.revoked:
            self._reuse_detected(credential, client)
        now = self._now()
        if credential.is_expired(now):
            raise CredentialExpired("refresh credential expired")
        # Only one concurrent caller can flip ACTIVE -> REVOKED; the other sees
        # exactly what a replay of a rotated credential would see.
        if self.repository.revoke_credential(credential.token_hash, now) is None:
            self._reuse_detected(credential, client)

        identity = self.identities.get_identity(credential.identity_id)
        if identity is None or not identity.enabled:
            logger.warning(
                "refresh_rotation_identity_unavailable", identity_id=credential.identity_id
            )
            raise CredentialRevoked("identity unavailable")

        replacement = self.create(identity, client)
        self.audit.record(
            AuditAction.TOKEN_REFRESH,
            description="refresh credential rotated",
            identity_id=identity.id,
            client=client,
            entity=replacement,
            metadata={"previous_credential_id": credential.id},
        )
        return replacement, identity

    def _reuse_detected(self, credential: RefreshCredential, client: ClientInfo) -> None:
        revoked = self.revoke_all(credential.identity_id)
        logger.warning(
            "refresh_reuse_detected",
            identity_id=credential.identity_id,
            credential_id=credential.id,
            client_ip=client.ip,
        )
        self.audit.record_security_event(
            "revoked refresh credential presented again; all sessions revoked",
            identity_id=credential.identity_id,
            client=client,
            metadata={
                "severity": "high",
                "credential_id": credential.id,
                "revoked_count": revoked,
            },
        )
        raise SecurityViolation(
            "refresh credential reuse detected", identity_id=credential.identity_id
        )

    def revoke(self, value: str, client: ClientInfo = UNKNOWN_CLIENT) -> bool:
        """Revoke ``value`` if it is active. Unknown or already revoked values are
        ignored; returns whether a credential was revoked."""
        if not value:
            return False
        revoked = self.repository.revoke_credential(hash_token(value), self._now())
        if revoked is None:
            logger.debug("refresh_revoke_noop")
            return False
        self.audit.record(
            AuditAction.LOGOUT,
            description="refresh credential revoked",
            identity_id=revoked.identity_id,
            client=client,
            entity=revoked,
        )
        return True

    def revoke_all(self, identity_id: str) -> int:
        count = self.repository.revoke_identity_credentials(identity_id, self._now())
        logger.info("refresh_credentials_revoked_all", identity_id=identity_id, count=count)
        return count

    def active_credentials(self, identity_id: str) -> List[RefreshCredential]:
        return self.repository.list_active_credentials(identity_id, self._now())

    def cleanup(self, cutoff: datetime) -> int:
        """Delete credentials that expired, or were revoked, before ``cutoff``."""
        deleted = self.repository.delete_stale_credentials(cutoff)
        logger.info("refresh_credential_cleanup", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted
