from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from gatewarden.api.schemas import (
    ApiKeyCreateRequest,
    ApiKeyIssuedResponse,
    ApiKeyResponse,
    DeviceResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    SecurityEventResponse,
    SessionResponse,
    SignupRequest,
    TwoFactorVerifyRequest,
    UnlockRequest,
)
from gatewarden.logging import get_logger
from gatewarden.service.api_keys import ApiKeyRegistry
from gatewarden.service.auth import Principal
from gatewarden.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
)
from gatewarden.service.rate_limit import RateLimiter
from gatewarden.service.runtime import get_runtime
from gatewarden.storage.models import (
    ApiKey,
    SecurityEventType,
    Severity,
    TerminationReason,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def _enforce_rate_limit(rule_name: str, identifier: str) -> None:
    runtime = get_runtime()
    await runtime.rate_limiter.enforce(identifier, RateLimiter.rule(rule_name))


async def get_principal(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Principal:
    runtime = get_runtime()
    outcome = await runtime.auth.authenticate_request(
        bearer_token=_bearer(authorization), api_key=x_api_key
    )
    principal = outcome.unwrap()
    if principal.api_key is not None:
        await _enforce_rate_limit("api", RateLimiter.identifier("user", user_id=principal.account.id))
    return principal


async def get_admin_principal(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise ForbiddenError("admin access required")
    await _enforce_rate_limit("admin", RateLimiter.identifier("user", user_id=principal.account.id))
    return principal


def _require_session(principal: Principal) -> None:
    """Credential management is not available to API keys."""
    if principal.session is None:
        raise ForbiddenError("this action requires an interactive session")


def _require_scope(principal: Principal, scope: str) -> None:
    if not principal.can(scope):
        raise ForbiddenError("missing required scope", detail={"scope": scope})


def _owned_api_key(principal: Principal, key_id: str) -> ApiKey:
    record = get_runtime().store.get_api_key(key_id)
    if record is None or record.account_id != principal.account.id:
        raise NotFoundError("API key not found", detail={"api_key_id": key_id})
    return record


# -- auth -----------------------------------------------------------------


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit("signup", RateLimiter.identifier("ip", ip=_client_ip(request)))
    account = await runtime.auth.register_account(body.email, body.password, name=body.name)
    return Envelope(status="ok", data={"account_id": account.id, "email": account.email})


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Password login; the login rate limit is applied per client address."""
    runtime = get_runtime()
    outcome = await runtime.auth.login(
        body.email,
        body.password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
        location=body.location,
        device_salt=body.device_salt,
    )
    result = outcome.unwrap()
    return Envelope(
        status="ok",
        data=LoginResponse(
            account_id=result.account.id,
            session_token=result.session.token,
            session_expires_at=result.session.expires_at,
            device_id=result.device.id,
            two_factor_required=result.two_factor_required,
            code_expires_at=result.code_expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    token = _bearer(authorization)
    if not token:
        raise AuthenticationError("Authentication required")
    terminated = await get_runtime().auth.logout(token)
    if not terminated:
        raise AuthenticationError("Invalid session", error_code="invalid_session")
    return Envelope(status="ok", data={"message": "session terminated"})


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["two-factor"])
async def verify_two_factor(body: TwoFactorVerifyRequest, authorization: Optional[str] = Header(None)):
    token = _bearer(authorization)
    if not token:
        raise AuthenticationError("Authentication required")
    session = (await get_runtime().auth.complete_two_factor(token, body.code)).unwrap()
    return Envelope(status="ok", data={"verified": True, "session_expires_at": session.expires_at})


@router.post("/auth/2fa/send", response_model=Envelope, tags=["two-factor"])
async def send_two_factor_code(authorization: Optional[str] = Header(None)):
    """Resend a code for a session still waiting on its second factor."""
    runtime = get_runtime()
    token = _bearer(authorization)
    session = runtime.store.get_session(token) if token else None
    if session is None or not session.is_active or not session.two_factor_pending:
        raise AuthenticationError("Invalid session", error_code="invalid_session")
    await _enforce_rate_limit("two_factor", RateLimiter.identifier("user", user_id=session.account_id))
    expires_at = (await runtime.two_factor.generate_and_send_code(session.account_id)).unwrap()
    return Envelope(status="ok", data={"sent": True, "code_expires_at": expires_at})


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["two-factor"])
async def enable_two_factor(principal: Principal = Depends(get_principal)):
    _require_session(principal)
    account = await get_runtime().two_factor.enable_2fa(principal.account.id)
    return Envelope(status="ok", data={"two_factor_enabled": account.two_factor_enabled})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["two-factor"])
async def disable_two_factor(principal: Principal = Depends(get_principal)):
    _require_session(principal)
    runtime = get_runtime()
    if runtime.two_factor.is_required_2fa(principal.account.id):
        raise ForbiddenError("two-factor authentication is required by your organization")
    account = await runtime.two_factor.disable_2fa(principal.account.id)
    return Envelope(status="ok", data={"two_factor_enabled": account.two_factor_enabled})


@router.post("/auth/password/reset/request", response_model=Envelope, tags=["password"])
async def request_password_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit("password_reset", RateLimiter.identifier("ip", ip=ip))
    response = await runtime.password_reset.initiate_password_reset(
        body.email, ip, request.headers.get("user-agent")
    )
    return Envelope(status="ok", data={"success": response.success, "message": response.message})


@router.post("/auth/password/reset/confirm", response_model=Envelope, tags=["password"])
async def confirm_password_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        "password_reset", RateLimiter.identifier("endpoint", path=request.url.path, ip=ip)
    )
    outcome = await runtime.password_reset.reset_password(
        body.token, body.new_password, ip, request.headers.get("user-agent")
    )
    outcome.unwrap()
    return Envelope(status="ok", data={"message": "password has been reset"})


@router.post("/auth/password/change", response_model=Envelope, tags=["password"])
async def change_password(
    body: PasswordChangeRequest, request: Request, principal: Principal = Depends(get_principal)
):
    _require_session(principal)
    outcome = await get_runtime().password_reset.change_password(
        principal.account.id,
        body.current_password,
        body.new_password,
        _client_ip(request),
        request.headers.get("user-agent"),
    )
    outcome.unwrap()
    return Envelope(status="ok", data={"message": "password changed"})


# -- sessions and devices -------------------------------------------------


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: Principal = Depends(get_principal)):
    current = principal.session.token if principal.session else None
    sessions = get_runtime().sessions.get_user_sessions(principal.account.id)
    return Envelope(
        status="ok",
        data=[SessionResponse.from_session(s, current) for s in sessions],
    )


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def terminate_session(
    session_id: str = Path(..., max_length=64), principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    match = next(
        (s for s in runtime.sessions.get_user_sessions(principal.account.id) if s.id == session_id),
        None,
    )
    if match is None:
        raise NotFoundError("session not found", detail={"session_id": session_id})
    await runtime.sessions.terminate_session(match.token, TerminationReason.USER_LOGOUT)
    return Envelope(status="ok", data={"terminated": True})


@router.get("/devices", response_model=Envelope, tags=["devices"])
async def list_devices(
    include_inactive: bool = Query(False), principal: Principal = Depends(get_principal)
):
    devices = get_runtime().devices.get_user_devices(principal.account.id, include_inactive)
    return Envelope(status="ok", data=[DeviceResponse.from_device(d) for d in devices])


@router.post("/devices/{device_id}/trust", response_model=Envelope, tags=["devices"])
async def trust_device(device_id: str, principal: Principal = Depends(get_principal)):
    _require_session(principal)
    device = await get_runtime().devices.trust_device(device_id, principal.account.id)
    return Envelope(status="ok", data=DeviceResponse.from_device(device))


@router.delete("/devices/{device_id}", response_model=Envelope, tags=["devices"])
async def remove_device(device_id: str, principal: Principal = Depends(get_principal)):
    _require_session(principal)
    terminated = await get_runtime().devices.remove_device(device_id, principal.account.id)
    return Envelope(status="ok", data={"removed": True, "terminated_sessions": terminated})


# -- api keys -------------------------------------------------------------


@router.get("/api-keys/scopes", response_model=Envelope, tags=["api-keys"])
async def list_api_key_scopes():
    return Envelope(status="ok", data=ApiKeyRegistry.available_scopes())


@router.get("/api-keys", response_model=Envelope, tags=["api-keys"])
async def list_api_keys(principal: Principal = Depends(get_principal)):
    keys = get_runtime().api_keys.list_api_keys(principal.account.id)
    return Envelope(status="ok", data=[ApiKeyResponse.from_record(k) for k in keys])


@router.post("/api-keys", response_model=Envelope, status_code=201, tags=["api-keys"])
async def create_api_key(body: ApiKeyCreateRequest, principal: Principal = Depends(get_principal)):
    _require_session(principal)
    issued = await get_runtime().api_keys.generate_api_key(
        principal.account.id, body.name, body.scopes, body.expires_in_days
    )
    data = ApiKeyIssuedResponse(
        **ApiKeyResponse.from_record(issued.record).model_dump(), key=issued.key
    )
    return Envelope(status="ok", data=data)


@router.post("/api-keys/{key_id}/rotate", response_model=Envelope, tags=["api-keys"])
async def rotate_api_key(key_id: str, principal: Principal = Depends(get_principal)):
    _require_session(principal)
    _owned_api_key(principal, key_id)
    issued = await get_runtime().api_keys.rotate_api_key(key_id)
    data = ApiKeyIssuedResponse(
        **ApiKeyResponse.from_record(issued.record).model_dump(), key=issued.key
    )
    return Envelope(status="ok", data=data)


@router.delete("/api-keys/{key_id}", response_model=Envelope, tags=["api-keys"])
async def delete_api_key(key_id: str, principal: Principal = Depends(get_principal)):
    _require_session(principal)
    _owned_api_key(principal, key_id)
    record = await get_runtime().api_keys.deactivate_api_key(key_id, "user_request")
    return Envelope(status="ok", data=ApiKeyResponse.from_record(record))


# -- admin ----------------------------------------------------------------


@router.get("/admin/security-events", response_model=Envelope, tags=["admin"])
async def list_security_events(
    severity: Optional[Severity] = Query(None),
    event_type: Optional[SecurityEventType] = Query(None),
    account_id: Optional[str] = Query(None, max_length=64),
    is_resolved: Optional[bool] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(get_admin_principal),
):
    _require_scope(principal, "admin:read")
    events = get_runtime().events.list_events(
        severity=severity,
        event_type=event_type,
        account_id=account_id,
        organization_id=principal.account.organization_id,
        start=start,
        end=end,
        is_resolved=is_resolved,
        limit=limit,
    )
    return Envelope(status="ok", data=[SecurityEventResponse.from_event(e) for e in events])


@router.post("/admin/security-events/{event_id}/resolve", response_model=Envelope, tags=["admin"])
async def resolve_security_event(event_id: str, principal: Principal = Depends(get_admin_principal)):
    _require_scope(principal, "admin:write")
    event = get_runtime().events.resolve_event(event_id, principal.account.id)
    return Envelope(status="ok", data=SecurityEventResponse.from_event(event))


@router.post("/admin/accounts/unlock", response_model=Envelope, tags=["admin"])
async def unlock_account(body: UnlockRequest, principal: Principal = Depends(get_admin_principal)):
    _require_scope(principal, "admin:write")
    account = await get_runtime().guard.unlock_account(body.email, principal.account.id)
    logger.info("account_unlocked_by_admin", account_id=account.id, admin_id=principal.account.id)
    return Envelope(status="ok", data={"account_id": account.id, "unlocked": True})


@router.get("/admin/stats", response_model=Envelope, tags=["admin"])
async def security_stats(
    days: int = Query(30, ge=1, le=365),
    principal: Principal = Depends(get_admin_principal),
):
    _require_scope(principal, "admin:read")
    return Envelope(
        status="ok",
        data=get_runtime().stats.overview(principal.account.organization_id, days),
    )


__all__: List[str] = ["router", "get_principal", "get_admin_principal"]
