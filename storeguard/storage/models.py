from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_token(value: str) -> str:
    """Digest used to index refresh credentials; raw values are never stored."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


@runtime_checkable
class Auditable(Protocol):
    """Anything that can be named as the subject of an audit event."""

    def audit_entity(self) -> Tuple[str, str]:
        """Return ``(entity_type, entity_id)``."""
        ...


class AuditAction(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGIN_FAILED = "LOGIN_FAILED"
    REGISTER = "REGISTER"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    USER_UPDATED = "USER_UPDATED"
    ADMIN_ACTION = "ADMIN_ACTION"
    SECURITY_EVENT = "SECURITY_EVENT"
    DATA_EXPORT = "DATA_EXPORT"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"


SECURITY_ACTIONS = frozenset(
    {
        AuditAction.LOGIN_FAILED,
        AuditAction.UNAUTHORIZED_ACCESS,
        AuditAction.RATE_LIMIT_EXCEEDED,
        AuditAction.SECURITY_EVENT,
    }
)


class AuditOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    WARNING = "WARNING"


@dataclass(frozen=True)
class ClientInfo:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


UNKNOWN_CLIENT = ClientInfo()


@dataclass
class Identity:
    id: str
    email: str
    role: str = "user"
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def audit_entity(self) -> Tuple[str, str]:
        return ("Identity", self.id)

    def summary(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "role": self.role}


@dataclass
class RefreshCredential:
    id: str
    identity_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    # Raw opaque value; only present on the instance returned at issuance
    value: Optional[str] = field(default=None, repr=False, compare=False)

    @classmethod
    def issue(
        cls,
        identity_id: str,
        *,
        ttl: timedelta,
        now: Optional[datetime] = None,
        client: ClientInfo = UNKNOWN_CLIENT,
    ) -> "RefreshCredential":
        issued_at = now or utcnow()
        value = secrets.token_urlsafe(48)
        return cls(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            token_hash=hash_token(value),
            issued_at=issued_at,
            expires_at=issued_at + ttl,
            client_ip=client.ip,
            user_agent=client.user_agent,
            value=value,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)

    def audit_entity(self) -> Tuple[str, str]:
        return ("RefreshCredential", self.id)


@dataclass(frozen=True)
class AccessGrant:
    token: str
    identity_id: str
    role: str
    expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class AuditEvent:
    action: AuditAction
    outcome: AuditOutcome
    description: str
    identity_id: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    error_detail: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_security_event(self) -> bool:
        return self.action in SECURITY_ACTIONS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "occurred_at": self.occurred_at.isoformat(),
            "action": self.action.value,
            "outcome": self.outcome.value,
            "description": self.description,
            "identity_id": self.identity_id,
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
            "error_detail": self.error_detail,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "metadata": dict(self.metadata),
        }
