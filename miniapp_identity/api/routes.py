"""HTTP route definitions for the identity service."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any
from urllib.parse import quote, urlencode

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from ..domain.account import Account, ResolvedPrincipal, Role
from ..domain.errors import ReasonCode, SESSION_EXPIRED_REASONS
from ..domain.service import IdentityService
from ..metrics import LOGIN_ATTEMPTS
from ..security.rate_limiter import FixedWindowRateLimiter
from .envelope import ApiError, success
from .gatekeeper import (
    GateDecision,
    clear_session_cookies,
    context_from_request,
    get_gatekeeper,
    require_principal,
    set_session_cookies,
)

router = APIRouter(prefix="/v1")

FORCE_LOGOUT_ROLES = (Role.super_admin.value, Role.platform_manager.value)
AUDIT_TENANT_ROLES = (Role.merchant.value, "agent")


class PrincipalResponse(BaseModel):
    """Serialised representation of a resolved principal."""

    account_id: str
    role: str
    is_staff: bool
    tenant_id: str | None
    membership_role: str | None = None

    @classmethod
    def from_domain(cls, principal: ResolvedPrincipal) -> "PrincipalResponse":
        return cls(**principal.as_dict())


class AccountResponse(BaseModel):
    """Serialised representation of an `Account` aggregate."""

    account_id: str
    external_id: str
    role: str
    username: str | None
    first_name: str | None
    last_name: str | None
    created_at: str

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain aggregate."""
        return cls(
            account_id=account.account_id,
            # Platform ids exceed the 53-bit range JavaScript clients can hold.
            external_id=str(account.external_id),
            role=account.role,
            username=account.username,
            first_name=account.first_name,
            last_name=account.last_name,
            created_at=account.created_at.isoformat(),
        )


class LoginRequest(BaseModel):
    """Signed platform payload exchanged for a session credential."""

    init_data: str = Field(..., min_length=1)
    tenant_id: str | None = None


class LoginResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_in: int
    created: bool
    principal: PrincipalResponse
    account: AccountResponse


class RoleChangeRequest(BaseModel):
    role: Role


class MagicLinkResponse(BaseModel):
    token: str
    expires_in: int
    url: str


class AuditLogEntry(BaseModel):
    """Audit log response entry."""

    audit_id: int
    account_id: str | None
    tenant_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    items: list[AuditLogEntry]
    next_cursor: str | None = None


def get_service(request: Request) -> IdentityService:
    """Resolve the `IdentityService` stored on the FastAPI application state."""
    service: IdentityService = request.app.state.identity_service
    return service


def get_rate_limiter(request: Request) -> FixedWindowRateLimiter:
    limiter: FixedWindowRateLimiter = request.app.state.rate_limiter
    return limiter


def get_login_path(request: Request) -> str:
    login_path: str = request.app.state.login_path
    return login_path


@router.post("/auth/telegram")
def login(
    request: Request,
    response: Response,
    payload: LoginRequest,
    service: IdentityService = Depends(get_service),
    rate_limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
) -> dict[str, Any]:
    """Verify a platform login payload and start a session."""
    ctx = context_from_request(request)
    client = ctx.client_address(request.app.state.trusted_proxies)
    decision = rate_limiter.check(f"login:{client}")
    if not decision.allowed:
        LOGIN_ATTEMPTS.labels(outcome=ReasonCode.RATE_LIMITED.value).inc()
        raise ApiError(
            ReasonCode.RATE_LIMITED,
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )

    outcome = service.login_with_init_data(payload.init_data, payload.tenant_id)
    if not outcome.ok:
        LOGIN_ATTEMPTS.labels(outcome=outcome.reason.value).inc()
        raise ApiError(outcome.reason)
    LOGIN_ATTEMPTS.labels(outcome="accepted").inc()

    grant = outcome.grant
    gatekeeper = get_gatekeeper(request)
    set_session_cookies(
        response, gatekeeper.cookie_name, grant.token, gatekeeper.cookie_policy(ctx), grant.expires_in
    )
    body = LoginResponse(
        token=grant.token,
        expires_in=grant.expires_in,
        created=outcome.created,
        principal=PrincipalResponse.from_domain(grant.principal),
        account=AccountResponse.from_domain(grant.account),
    )
    return success(body.model_dump(mode="json"))


@router.get("/session")
def current_session(decision: GateDecision = Depends(require_principal())) -> dict[str, Any]:
    """Return the principal behind the presented credential."""
    return success(
        {
            "principal": PrincipalResponse.from_domain(decision.principal).model_dump(mode="json"),
            "expires_at": decision.claims.expires_at,
            "source": decision.source,
        }
    )


@router.post("/session/logout")
def logout(request: Request, response: Response) -> dict[str, Any]:
    """Drop the session cookies on this client; other devices stay signed in."""
    gatekeeper = get_gatekeeper(request)
    clear_session_cookies(
        response, gatekeeper.cookie_name, gatekeeper.cookie_policy(context_from_request(request))
    )
    return success()


@router.post("/session/revoke")
def revoke_own_sessions(
    request: Request,
    response: Response,
    decision: GateDecision = Depends(require_principal()),
    service: IdentityService = Depends(get_service),
) -> dict[str, Any]:
    """Remote wipe: invalidate every credential issued to the caller."""
    principal = decision.principal
    service.revoke_sessions(
        principal.account_id, actor=principal.account_id, tenant_id=principal.tenant_id
    )
    gatekeeper = get_gatekeeper(request)
    # The dependency may have queued a re-issue; the clear must be the last word.
    response.headers.raw[:] = [
        (key, value) for key, value in response.headers.raw if key.lower() != b"set-cookie"
    ]
    clear_session_cookies(response, gatekeeper.cookie_name, decision.policy)
    return success({"revoked": True})


@router.post("/accounts/{account_id}/revoke")
def force_logout(
    account_id: str,
    decision: GateDecision = Depends(require_principal(*FORCE_LOGOUT_ROLES)),
    service: IdentityService = Depends(get_service),
) -> dict[str, Any]:
    """Staff-forced logout of another account."""
    account_id = _account_id_or_404(account_id)
    if not service.revoke_sessions(account_id, actor=decision.principal.account_id):
        raise ApiError(ReasonCode.NOT_FOUND)
    return success({"account_id": account_id, "revoked": True})


@router.put("/accounts/{account_id}/role")
def change_role(
    account_id: str,
    payload: RoleChangeRequest,
    decision: GateDecision = Depends(require_principal(Role.super_admin.value)),
    service: IdentityService = Depends(get_service),
) -> dict[str, Any]:
    """Assign a new role; the account's existing sessions are revoked with it."""
    account_id = _account_id_or_404(account_id)
    account = service.change_role(account_id, payload.role, actor=decision.principal.account_id)
    if account is None:
        raise ApiError(ReasonCode.NOT_FOUND)
    return success({"account": AccountResponse.from_domain(account).model_dump(mode="json")})


@router.post("/auth/magic-link")
def create_magic_link(
    decision: GateDecision = Depends(require_principal()),
    service: IdentityService = Depends(get_service),
) -> dict[str, Any]:
    """Mint a one-time link that signs a desktop browser into the caller's account."""
    issued = service.issue_magic_link(decision.principal)
    if issued is None:
        raise ApiError(ReasonCode.ACCOUNT_DISABLED)
    token, expires_in = issued
    body = MagicLinkResponse(
        token=token,
        expires_in=expires_in,
        url=f"{router.prefix}/auth/magic?token={quote(token)}",
    )
    return success(body.model_dump(mode="json"))


@router.get("/auth/magic")
def exchange_magic_link(
    request: Request,
    token: str | None = Query(default=None),
    redirect: str = Query(default="/"),
    service: IdentityService = Depends(get_service),
    login_path: str = Depends(get_login_path),
) -> Response:
    """Trade a magic-link token for a session cookie, then redirect into the app."""
    gatekeeper = get_gatekeeper(request)
    policy = gatekeeper.cookie_policy(context_from_request(request))

    if not token:
        return _login_redirect(login_path, ReasonCode.CREDENTIAL_MISSING)

    outcome = service.exchange_magic_token(token)
    if not outcome.ok:
        LOGIN_ATTEMPTS.labels(outcome=outcome.reason.value).inc()
        redirect_response = _login_redirect(login_path, outcome.reason)
        clear_session_cookies(redirect_response, gatekeeper.cookie_name, policy)
        return redirect_response

    LOGIN_ATTEMPTS.labels(outcome="accepted").inc()
    grant = outcome.grant
    redirect_response = RedirectResponse(_safe_redirect(redirect), status_code=303)
    set_session_cookies(redirect_response, gatekeeper.cookie_name, grant.token, policy, grant.expires_in)
    return redirect_response


@router.get("/audit/logs")
def list_audit_logs(
    request: Request,
    account_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    decision: GateDecision = Depends(require_principal()),
    service: IdentityService = Depends(get_service),
) -> dict[str, Any]:
    """Return paginated audit events; staff see any tenant, merchants their own."""
    principal = decision.principal
    if principal.is_staff:
        requested = context_from_request(request).requested_tenant_id
        tenant_id = principal.tenant_id if requested else None
    else:
        allowed = principal.role.value in AUDIT_TENANT_ROLES or principal.membership_role in AUDIT_TENANT_ROLES
        if principal.tenant_id is None or not allowed:
            raise ApiError(ReasonCode.ROLE_INSUFFICIENT)
        tenant_id = principal.tenant_id

    if account_id is not None:
        try:
            account_id = str(uuid.UUID(account_id))
        except ValueError as exc:
            raise ApiError(ReasonCode.VALIDATION_ERROR) from exc

    try:
        records, next_cursor = service.list_audit_events(
            tenant_id=tenant_id,
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        raise ApiError(ReasonCode.VALIDATION_ERROR) from exc

    items = [
        AuditLogEntry(
            audit_id=record.audit_id,
            account_id=record.account_id,
            tenant_id=record.tenant_id,
            event_type=record.event_type,
            actor=record.actor,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record in records
    ]
    return success(AuditLogResponse(items=items, next_cursor=next_cursor).model_dump(mode="json"))


def _account_id_or_404(account_id: str) -> str:
    try:
        return str(uuid.UUID(account_id))
    except ValueError as exc:
        raise ApiError(ReasonCode.NOT_FOUND) from exc


def _login_redirect(login_path: str, reason: ReasonCode) -> RedirectResponse:
    marker = "session_expired" if reason in SESSION_EXPIRED_REASONS else "auth_required"
    query = urlencode({"reason": marker})
    return RedirectResponse(f"{login_path}?{query}", status_code=303)


def _safe_redirect(target: str) -> str:
    """Only same-origin relative paths are honoured."""
    if not target.startswith("/") or target.startswith("//") or "\\" in target:
        return "/"
    return target
