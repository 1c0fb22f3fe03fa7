from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from storeguard.logging import get_logger
from storeguard.storage.errors import EMAIL_UNIQUE, TOKEN_HASH_UNIQUE, ConstraintViolation
from storeguard.storage.models import (
    AuditAction,
    AuditEvent,
    AuditOutcome,
    Identity,
    RefreshCredential,
    normalize_email,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_identity (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_credential (
        id TEXT PRIMARY KEY,
        identity_id TEXT NOT NULL REFERENCES app_identity(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        client_ip TEXT,
        user_agent TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS refresh_credential_identity_idx
        ON refresh_credential (identity_id, revoked, issued_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        occurred_at TIMESTAMPTZ NOT NULL,
        action TEXT NOT NULL,
        outcome TEXT NOT NULL,
        description TEXT NOT NULL,
        identity_id TEXT,
        client_ip TEXT,
        user_agent TEXT,
        error_detail TEXT,
        entity_type TEXT,
        entity_id TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_event_occurred_idx ON audit_event (occurred_at)",
    "CREATE INDEX IF NOT EXISTS audit_event_identity_idx ON audit_event (identity_id, occurred_at)",
    "CREATE INDEX IF NOT EXISTS audit_event_ip_action_idx ON audit_event (client_ip, action, occurred_at)",
    "CREATE INDEX IF NOT EXISTS audit_event_entity_idx ON audit_event (entity_type, entity_id)",
)


class PostgresStore:
    """PostgreSQL-backed identities, refresh credentials and audit events.

    Revocation is a conditional ``UPDATE ... WHERE revoked = FALSE`` so only one
    concurrent caller can observe the transition. Inserting a credential takes a
    per-identity advisory transaction lock so the active-credential limit holds
    across concurrent logins and across service instances.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping -------------------------------------------------------------

    @staticmethod
    def _identity_from_row(row: dict[str, Any]) -> Identity:
        return Identity(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role", "user"),
            enabled=row.get("enabled", True),
            created_at=row["created_at"],
        )

    @staticmethod
    def _credential_from_row(row: dict[str, Any]) -> RefreshCredential:
        return RefreshCredential(
            id=str(row["id"]),
            identity_id=str(row["identity_id"]),
            token_hash=row["token_hash"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked=row["revoked"],
            revoked_at=row.get("revoked_at"),
            client_ip=row.get("client_ip"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _event_from_row(row: dict[str, Any]) -> AuditEvent:
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return AuditEvent(
            id=str(row["id"]),
            occurred_at=row["occurred_at"],
            action=AuditAction(row["action"]),
            outcome=AuditOutcome(row["outcome"]),
            description=row["description"],
            identity_id=row.get("identity_id"),
            client_ip=row.get("client_ip"),
            user_agent=row.get("user_agent"),
            error_detail=row.get("error_detail"),
            entity_type=row.get("entity_type"),
            entity_id=row.get("entity_id"),
            metadata=metadata,
        )

    # identities ----------------------------------------------------------------

    def create_identity(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        enabled: bool = True,
    ) -> Identity:
        identity_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_identity (id, email, password_hash, role, enabled)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (identity_id, normalize_email(email), password_hash, role, enabled),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation.from_unique_violation(
                exc, "email already exists", default_constraint=EMAIL_UNIQUE, field="email"
            ) from exc
        return self._identity_from_row(row)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_identity WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_password_hash(self, identity_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM app_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return row["password_hash"] if row else None

    def set_identity_enabled(self, identity_id: str, enabled: bool) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_identity SET enabled = %s WHERE id = %s RETURNING *",
                (enabled, identity_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    # refresh credentials ---------------------------------------------------------

    def get_credential(self, token_hash: str) -> Optional[RefreshCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_credential WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def insert_credential(
        self, credential: RefreshCredential, *, max_active: int, now: datetime
    ) -> List[RefreshCredential]:
        with self._connect() as conn:
            conn.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s))", (credential.identity_id,)
            )
            active = conn.execute(
                """
                SELECT id FROM refresh_credential
                WHERE identity_id = %s AND revoked = FALSE AND expires_at > %s
                ORDER BY issued_at ASC
                """,
                (credential.identity_id, now),
            ).fetchall()
            overflow = len(active) - max_active + 1
            evicted_rows: list = []
            if overflow > 0:
                evicted_rows = conn.execute(
                    """
                    UPDATE refresh_credential SET revoked = TRUE, revoked_at = %s
                    WHERE id = ANY(%s) AND revoked = FALSE
                    RETURNING *
                    """,
                    (now, [row["id"] for row in active[:overflow]]),
                ).fetchall()
            try:
                conn.execute(
                    """
                    INSERT INTO refresh_credential (
                        id, identity_id, token_hash, issued_at, expires_at,
                        revoked, revoked_at, client_ip, user_agent
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        credential.id,
                        credential.identity_id,
                        credential.token_hash,
                        credential.issued_at,
                        credential.expires_at,
                        credential.revoked,
                        credential.revoked_at,
                        credential.client_ip,
                        credential.user_agent,
                    ),
                )
            except errors.UniqueViolation as exc:
                raise ConstraintViolation.from_unique_violation(
                    exc, "refresh credential already exists", default_constraint=TOKEN_HASH_UNIQUE
                ) from exc
        return [self._credential_from_row(row) for row in evicted_rows]

    def revoke_credential(
        self, token_hash: str, revoked_at: datetime
    ) -> Optional[RefreshCredential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_credential SET revoked = TRUE, revoked_at = %s
                WHERE token_hash = %s AND revoked = FALSE
                RETURNING *
                """,
                (revoked_at, token_hash),
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def revoke_identity_credentials(self, identity_id: str, revoked_at: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_credential SET revoked = TRUE, revoked_at = %s
                WHERE identity_id = %s AND revoked = FALSE AND expires_at > %s
                """,
                (revoked_at, identity_id, revoked_at),
            )
            return cur.rowcount

    def list_active_credentials(
        self, identity_id: str, now: datetime
    ) -> List[RefreshCredential]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_credential
                WHERE identity_id = %s AND revoked = FALSE AND expires_at > %s
                ORDER BY issued_at ASC
                """,
                (identity_id, now),
            ).fetchall()
        return [self._credential_from_row(row) for row in rows]

    def delete_stale_credentials(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM refresh_credential
                WHERE expires_at < %s OR (revoked AND revoked_at < %s)
                """,
                (cutoff, cutoff),
            )
            return cur.rowcount

    # audit events ----------------------------------------------------------------

    def save_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (
                    id, occurred_at, action, outcome, description, identity_id,
                    client_ip, user_agent, error_detail, entity_type, entity_id, metadata
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    event.id,
                    event.occurred_at,
                    event.action.value,
                    event.outcome.value,
                    event.description,
                    event.identity_id,
                    event.client_ip,
                    event.user_agent,
                    event.error_detail,
                    event.entity_type,
                    event.entity_id,
                    json.dumps(event.metadata, default=str),
                ),
            )

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
        clauses: list[str] = []
        params: list[Any] = []
        if identity_id is not None:
            clauses.append("identity_id = %s")
            params.append(identity_id)
        if actions is not None:
            clauses.append("action = ANY(%s)")
            params.append([AuditAction(a).value for a in actions])
        if client_ip is not None:
            clauses.append("client_ip = %s")
            params.append(client_ip)
        if entity_type is not None:
            clauses.append("entity_type = %s")
            params.append(entity_type)
        if entity_id is not None:
            clauses.append("entity_id = %s")
            params.append(entity_id)
        if since is not None:
            clauses.append("occurred_at >= %s")
            params.append(since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_event {where} ORDER BY occurred_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [self._event_from_row(row) for row in rows]

    def delete_audit_events_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM audit_event WHERE occurred_at < %s", (cutoff,))
            deleted = cur.rowcount
        self.logger.info("audit_events_deleted", deleted=deleted)
        return deleted
