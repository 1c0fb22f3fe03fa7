from __future__ import annotations

from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from storeguard.api.schemas import (
    AuditEventList,
    AuditEventResponse,
    AuthResponse,
    Envelope,
    IdentitySummary,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    LogoutResponse,
    RegisterRequest,
    TokenRefreshRequest,
)
from storeguard.logging import get_logger
from storeguard.service.auth import AuthResult
from storeguard.service.errors import ForbiddenError, InvalidCredentials, RateLimitExceeded
from storeguard.service.rate_limit import EndpointClass, RateLimitDecision
from storeguard.service.runtime import Runtime
from storeguard.storage.models import AuditAction, AuditEvent, ClientInfo, Identity

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _client_ip(request: Request, trust_forwarded: bool) -> str:
    if trust_forwarded:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    return request.client.host if request.client else "unknown"


def get_client(request: Request, runtime: Runtime = Depends(get_runtime)) -> ClientInfo:
    return ClientInfo(
        ip=_client_ip(request, runtime.settings.trust_forwarded_headers),
        user_agent=request.headers.get("user-agent"),
    )


def rate_limit_guard(endpoint_class: EndpointClass):
    """Build a dependency that admits a request against its endpoint class bucket."""

    def guard(
        response: Response,
        client: ClientInfo = Depends(get_client),
        runtime: Runtime = Depends(get_runtime),
    ) -> RateLimitDecision:
        decision = runtime.rate_limiter.try_consume(endpoint_class, client.ip or "unknown")
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                endpoint_class=endpoint_class.value,
                client_ip=client.ip,
                retry_after_seconds=decision.retry_after_seconds,
            )
            raise RateLimitExceeded(
                retry_after_seconds=decision.retry_after_seconds,
                remaining_tokens=decision.remaining_tokens,
                limit=decision.limit,
            )
        response.headers["X-Rate-Limit-Remaining"] = str(decision.remaining_tokens)
        response.headers["X-Rate-Limit-Limit"] = str(decision.limit)
        return decision

    return guard


auth_rate_limit = rate_limit_guard(EndpointClass.AUTH)
admin_rate_limit = rate_limit_guard(EndpointClass.ADMIN)
general_rate_limit = rate_limit_guard(EndpointClass.GENERAL)


def get_current_identity(
    authorization: Optional[str] = Header(default=None),
    runtime: Runtime = Depends(get_runtime),
) -> Identity:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidCredentials("missing bearer token")
    return runtime.auth.authenticate(token.strip())


def get_admin_identity(
    identity: Identity = Depends(get_current_identity),
    client: ClientInfo = Depends(get_client),
    runtime: Runtime = Depends(get_runtime),
) -> Identity:
    if not identity.is_admin:
        runtime.audit.record_failure(
            AuditAction.UNAUTHORIZED_ACCESS,
            description="admin endpoint access denied",
            error_detail=f"role={identity.role}",
            identity_id=identity.id,
            client=client,
        )
        raise ForbiddenError("admin role required")
    return identity


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=result.grant.token,
            access_token_expires_at=result.grant.expires_at,
            refresh_token=result.credential.value,
            refresh_token_expires_at=result.credential.expires_at,
            token_type=result.grant.token_type,
            identity=IdentitySummary(**result.identity.summary()),
        ),
    )


def _event_list(events: List[AuditEvent]) -> Envelope:
    items = [AuditEventResponse(**event.to_dict()) for event in events]
    return Envelope(status="ok", data=AuditEventList(items=items, count=len(items)))


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    dependencies=[Depends(auth_rate_limit)],
)
def register(
    body: RegisterRequest,
    client: ClientInfo = Depends(get_client),
    runtime: Runtime = Depends(get_runtime),
):
    return _auth_envelope(runtime.auth.register(body.email, body.password, client))


@router.post("/auth/login", response_model=Envelope, dependencies=[Depends(auth_rate_limit)])
def login(
    body: LoginRequest,
    client: ClientInfo = Depends(get_client),
    runtime: Runtime = Depends(get_runtime),
):
    return _auth_envelope(runtime.auth.login(body.email, body.password, client))


@router.post(
    "/auth/refresh", response_model=Envelope, dependencies=[Depends(general_rate_limit)]
)
def refresh(
    body: TokenRefreshRequest,
    client: ClientInfo = Depends(get_client),
    runtime: Runtime = Depends(get_runtime),
):
    return _auth_envelope(runtime.auth.refresh(body.refresh_token, client))


@router.post(
    "/auth/logout", response_model=Envelope, dependencies=[Depends(general_rate_limit)]
)
def logout(
    body: LogoutRequest,
    client: ClientInfo = Depends(get_client),
    runtime: Runtime = Depends(get_runtime),
):
    runtime.auth.logout(body.refresh_token, client)
    return Envelope(status="ok", data=LogoutResponse())


@router.post(
    "/auth/logout-all", response_model=Envelope, dependencies=[Depends(general_rate_limit)]
)
def logout_all(
    identity: Identity = Depends(get_current_identity),
    client: ClientInfo = Depends(get_client),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = runtime.auth.logout_all(identity, client)
    return Envelope(status="ok", data=LogoutAllResponse(revoked=revoked))


@router.get(
    "/admin/security-events",
    response_model=Envelope,
    dependencies=[Depends(admin_rate_limit)],
)
def security_events(
    hours: int = Query(24, ge=1, le=24 * 90),
    limit: int = Query(100, ge=1, le=1000),
    admin: Identity = Depends(get_admin_identity),
    runtime: Runtime = Depends(get_runtime),
):
    events = runtime.audit.recent_security_events(timedelta(hours=hours), limit=limit)
    return _event_list(events)


@router.get("/admin/audit", response_model=Envelope, dependencies=[Depends(admin_rate_limit)])
def audit_events(
    identity_id: Optional[str] = Query(None, max_length=64),
    action: Optional[AuditAction] = Query(None),
    entity_type: Optional[str] = Query(None, max_length=64),
    entity_id: Optional[str] = Query(None, max_length=64),
    limit: int = Query(100, ge=1, le=1000),
    admin: Identity = Depends(get_admin_identity),
    runtime: Runtime = Depends(get_runtime),
):
    events = runtime.audit.query(
        identity_id=identity_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        limit=limit,
    )
    return _event_list(events)
