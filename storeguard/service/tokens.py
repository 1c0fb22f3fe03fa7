from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from storeguard.logging import get_logger
from storeguard.storage.models import AccessGrant, Identity, utcnow

logger = get_logger(__name__)


class AccessTokenSigner(Protocol):
    def issue(self, identity: Identity) -> AccessGrant: ...

    def verify(self, token: str) -> Optional[dict[str, Any]]: ...


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class HS256Signer:
    """Self-verifying access grants as compact HS256 JWTs."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl: timedelta,
        leeway: timedelta = timedelta(seconds=30),
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl
        self.leeway = leeway
        self._now = now

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, identity: Identity) -> AccessGrant:
        now = self._now()
        expires_at = now + self.ttl
        header = {"alg": "HS256", "typ": "JWT"}
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": identity.id,
            "role": identity.role,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
        }
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return AccessGrant(
            token=token, identity_id=identity.id, role=identity.role, expires_at=expires_at
        )

    def verify(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted; anything else is an algorithm confusion attempt
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(
            expected.encode("ascii"), sig_b64.encode("utf-8", "surrogateescape")
        ):
            logger.warning("jwt_signature_mismatch")
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp() - self.leeway.total_seconds():
            return None
        return payload
