"""Storage failures raised identically by the memory and PostgreSQL stores."""

from __future__ import annotations

from typing import Any, Dict, Optional

# Default names PostgreSQL gives the UNIQUE columns in the schema
EMAIL_UNIQUE = "app_identity_email_key"
TOKEN_HASH_UNIQUE = "refresh_credential_token_hash_key"


class StorageError(Exception):
    """Base class for errors a store raises on purpose."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConstraintViolation(StorageError):
    """A write collided with a uniqueness rule.

    ``constraint`` names the rule that fired; ``field`` is the client-facing
    attribute behind it, when there is one worth reporting.
    """

    def __init__(
        self,
        message: str,
        *,
        constraint: Optional[str] = None,
        field: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.constraint = constraint
        self.field = field

    @property
    def detail(self) -> Dict[str, Any]:
        return {"field": self.field} if self.field else {}

    @classmethod
    def from_unique_violation(
        cls, exc: Exception, message: str, *, default_constraint: str, field: Optional[str] = None
    ) -> "ConstraintViolation":
        """Wrap a driver ``UniqueViolation``, keeping the server-reported constraint name."""
        diag = getattr(exc, "diag", None)
        constraint = getattr(diag, "constraint_name", None) or default_constraint
        return cls(message, constraint=constraint, field=field)


__all__ = ["EMAIL_UNIQUE", "TOKEN_HASH_UNIQUE", "ConstraintViolation", "StorageError"]
