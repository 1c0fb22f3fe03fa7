from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from storeguard.config import Settings
from storeguard.logging import get_logger
from storeguard.service.audit import SecurityAuditLog
from storeguard.service.errors import DuplicateIdentity, InvalidCredentials
from storeguard.service.sessions import SessionStore
from storeguard.service.tokens import AccessTokenSigner
from storeguard.storage.errors import ConstraintViolation
from storeguard.storage.models import (
    UNKNOWN_CLIENT,
    AccessGrant,
    AuditAction,
    ClientInfo,
    Identity,
    RefreshCredential,
    normalize_email,
)

logger = get_logger(__name__)


class IdentityDirectory(Protocol):
    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def get_password_hash(self, identity_id: str) -> Optional[str]: ...

    def create_identity(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        enabled: bool = True,
    ) -> Identity: ...


class PasswordHashing(Protocol):
    def hash(self, password: str) -> str: ...

    def verify(self, password_hash: str, password: str) -> bool: ...


class Argon2Passwords:
    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False


@dataclass(frozen=True)
class AuthResult:
    grant: AccessGrant
    credential: RefreshCredential
    identity: Identity


class CredentialVerifier:
    """Password login, registration and refresh-credential exchange.

    Every outcome is written to the audit log. Failed logins are counted per
    client IP; reaching ``failed_login_threshold`` within
    ``failed_login_window`` adds a SECURITY_EVENT on top of the LOGIN_FAILED
    entry. Refresh always rotates the presented credential.
    """

    def __init__(
        self,
        directory: IdentityDirectory,
        sessions: SessionStore,
        audit: SecurityAuditLog,
        signer: AccessTokenSigner,
        passwords: Optional[PasswordHashing] = None,
        *,
        failed_login_threshold: int = 5,
        failed_login_window: timedelta = timedelta(minutes=15),
    ) -> None:
        self.directory = directory
        self.sessions = sessions
        self.audit = audit
        self.signer = signer
        self.passwords = passwords or Argon2Passwords()
        self.failed_login_threshold = failed_login_threshold
        self.failed_login_window = failed_login_window
        # Verified for unknown emails so both failure paths cost one hash check
        self._dummy_hash = self.passwords.hash("storeguard-timing-equalizer")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        directory: IdentityDirectory,
        sessions: SessionStore,
        audit: SecurityAuditLog,
        signer: AccessTokenSigner,
        passwords: Optional[PasswordHashing] = None,
    ) -> "CredentialVerifier":
        return cls(
            directory,
            sessions,
            audit,
            signer,
            passwords,
            failed_login_threshold=settings.failed_login_threshold,
            failed_login_window=timedelta(minutes=settings.failed_login_window_minutes),
        )

    def login(
        self, email: str, password: str, client: ClientInfo = UNKNOWN_CLIENT
    ) -> AuthResult:
        normalized = normalize_email(email or "")
        identity = self.directory.get_identity_by_email(normalized) if normalized else None
        stored_hash = self.directory.get_password_hash(identity.id) if identity else None

        if stored_hash is None:
            self.passwords.verify(self._dummy_hash, password)
            self._login_failed(normalized, client, reason="unknown email")
            raise InvalidCredentials("invalid credentials")
        if not self.passwords.verify(stored_hash, password):
            self._login_failed(normalized, client, reason="password mismatch", identity=identity)
            raise InvalidCredentials("invalid credentials")
        if not identity.enabled:
            self._login_failed(normalized, client, reason="identity disabled", identity=identity)
            raise InvalidCredentials("invalid credentials")

        credential = self.sessions.create(identity, client)
        grant = self.signer.issue(identity)
        self.audit.record(
            AuditAction.LOGIN,
            description="login succeeded",
            identity_id=identity.id,
            client=client,
            entity=identity,
        )
        logger.info("login_succeeded", identity_id=identity.id, client_ip=client.ip)
        return AuthResult(grant=grant, credential=credential, identity=identity)

    def _login_failed(
        self,
        email: str,
        client: ClientInfo,
        *,
        reason: str,
        identity: Optional[Identity] = None,
    ) -> None:
        self.audit.record_failure(
            AuditAction.LOGIN_FAILED,
            description="failed login attempt",
            error_detail=reason,
            identity_id=identity.id if identity else None,
            client=client,
            metadata={"email": email},
        )
        logger.warning("login_failed", client_ip=client.ip, reason=reason)
        failures = self.audit.count_recent_failures(client.ip, self.failed_login_window)
        # Once per burst: later failures in the same window are already covered.
        if failures == self.failed_login_threshold:
            window_minutes = int(self.failed_login_window.total_seconds() // 60)
            self.audit.record_security_event(
                f"{failures} failed logins from {client.ip} within {window_minutes} minutes",
                client=client,
                metadata={"failed_attempts": failures, "window_minutes": window_minutes},
            )

    def register(
        self,
        email: str,
        password: str,
        client: ClientInfo = UNKNOWN_CLIENT,
        *,
        role: str = "user",
    ) -> AuthResult:
        normalized = normalize_email(email)
        with self.audit.track(
            AuditAction.REGISTER, description="identity registered", client=client
        ) as op:
            if self.directory.get_identity_by_email(normalized) is not None:
                raise DuplicateIdentity("email already registered")
            try:
                identity = self.directory.create_identity(
                    normalized, self.passwords.hash(password), role=role
                )
            except ConstraintViolation as exc:
                raise DuplicateIdentity("email already registered") from exc
            op.entity(identity, identity_id=identity.id)

        credential = self.sessions.create(identity, client)
        grant = self.signer.issue(identity)
        logger.info("identity_registered", identity_id=identity.id)
        return AuthResult(grant=grant, credential=credential, identity=identity)

    def refresh(self, refresh_value: str, client: ClientInfo = UNKNOWN_CLIENT) -> AuthResult:
        credential, identity = self.sessions.exchange(refresh_value, client)
        grant = self.signer.issue(identity)
        return AuthResult(grant=grant, credential=credential, identity=identity)

    def logout(self, refresh_value: str, client: ClientInfo = UNKNOWN_CLIENT) -> None:
        revoked = self.sessions.revoke(refresh_value, client)
        logger.info("logout", revoked=revoked, client_ip=client.ip)

    def logout_all(self, identity: Identity, client: ClientInfo = UNKNOWN_CLIENT) -> int:
        count = self.sessions.revoke_all(identity.id)
        self.audit.record(
            AuditAction.LOGOUT,
            description="all sessions revoked",
            identity_id=identity.id,
            client=client,
            entity=identity,
            metadata={"revoked_count": count},
        )
        return count

    def authenticate(self, access_token: Optional[str]) -> Identity:
        """Resolve the identity behind an access grant."""
        payload = self.signer.verify(access_token) if access_token else None
        if not payload:
            raise InvalidCredentials("invalid access token")
        identity = self.directory.get_identity(str(payload.get("sub")))
        if identity is None or not identity.enabled:
            raise InvalidCredentials("identity unavailable")
        return identity
