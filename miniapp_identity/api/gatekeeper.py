"""Perimeter authorization for every protected route.

A request walks the states below in order; the first failed transition ends in
``REJECTED`` with a specific :class:`ReasonCode`::

    UNAUTHENTICATED -> CREDENTIAL_PRESENT -> SIGNATURE_VALID -> NOT_EXPIRED
        -> NOT_REVOKED -> ROLE_AUTHORIZED -> FORWARDED
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

from fastapi import Request, Response

from ..domain.account import ResolvedPrincipal
from ..domain.contracts import RequestContext, normalize_tenant_id
from ..domain.errors import ReasonCode
from ..domain.resolver import IdentityResolver, IdentityStore
from ..metrics import GATE_DECISIONS
from ..security.cookies import (
    CookiePolicy,
    build_clear_cookie_header,
    build_set_cookie_header,
    mode_cookie_name,
    select_cookie_policy,
)
from ..security.revocation import RevocationStatus, check_revocation
from ..security.tokens import SessionClaims, SessionCodec
from .envelope import ApiError

logger = logging.getLogger(__name__)


class GateState(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    CREDENTIAL_PRESENT = "CREDENTIAL_PRESENT"
    SIGNATURE_VALID = "SIGNATURE_VALID"
    NOT_EXPIRED = "NOT_EXPIRED"
    NOT_REVOKED = "NOT_REVOKED"
    ROLE_AUTHORIZED = "ROLE_AUTHORIZED"
    FORWARDED = "FORWARDED"
    REJECTED = "REJECTED"


@dataclass(frozen=True, slots=True)
class GateDecision:
    state: GateState
    reason: ReasonCode | None = None
    principal: ResolvedPrincipal | None = None
    claims: SessionClaims | None = None
    credential: str | None = None
    source: str | None = None
    policy: CookiePolicy | None = None
    reissue: bool = False

    @property
    def forwarded(self) -> bool:
        return self.state is GateState.FORWARDED


def _reject(reason: ReasonCode, **kwargs) -> GateDecision:
    return GateDecision(state=GateState.REJECTED, reason=reason, **kwargs)


def context_from_request(request: Request) -> RequestContext:
    """Copy the parts of a Starlette request the auth components read."""
    return RequestContext(
        headers={key.lower(): value for key, value in request.headers.items()},
        cookies=dict(request.cookies),
        query=dict(request.query_params),
        path=request.url.path,
        client_host=request.client.host if request.client else None,
    )


class RouteGatekeeper:
    """Authorize or reject a request before any business logic runs."""

    def __init__(
        self,
        codec: SessionCodec,
        store: IdentityStore,
        *,
        cookie_name: str,
        cookie_domain: str | None = None,
        local_hosts: Iterable[str] = ("localhost", "127.0.0.1", "::1"),
    ) -> None:
        self._codec = codec
        self._store = store
        self._resolver = IdentityResolver(store)
        self.cookie_name = cookie_name
        self._cookie_domain = cookie_domain
        self._local_hosts = tuple(local_hosts)

    def cookie_policy(self, ctx: RequestContext) -> CookiePolicy:
        return select_cookie_policy(
            ctx.host, ctx.proto, local_hosts=self._local_hosts, domain=self._cookie_domain
        )

    def extract_credential(self, ctx: RequestContext) -> tuple[str | None, str | None]:
        """Return ``(credential, source)``; the cookie wins over the bearer header."""
        cookie = ctx.cookies.get(self.cookie_name)
        if cookie:
            return cookie, "cookie"
        authorization = ctx.header("authorization") or ""
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip(), "bearer"
        return None, None

    def evaluate(
        self, ctx: RequestContext, roles: Iterable[str] | None = None
    ) -> GateDecision:
        """Run the gate state machine for one request."""
        decision = self._evaluate(ctx, roles)
        GATE_DECISIONS.labels(
            outcome="forwarded" if decision.forwarded else decision.reason.value
        ).inc()
        if not decision.forwarded:
            logger.info("gate rejected %s: reason=%s", ctx.path, decision.reason.value)
        return decision

    def _evaluate(self, ctx: RequestContext, roles: Iterable[str] | None) -> GateDecision:
        # UNAUTHENTICATED -> CREDENTIAL_PRESENT
        credential, source = self.extract_credential(ctx)
        if credential is None:
            return _reject(ReasonCode.CREDENTIAL_MISSING)

        # CREDENTIAL_PRESENT -> SIGNATURE_VALID -> NOT_EXPIRED
        claims = self._codec.verify(credential)
        if claims is None:
            return _reject(ReasonCode.CREDENTIAL_MALFORMED_OR_EXPIRED, source=source)

        # NOT_EXPIRED -> NOT_REVOKED
        account = self._store.get_account(claims.subject)
        if account is None or account.is_deleted:
            return _reject(ReasonCode.ACCOUNT_DISABLED, claims=claims, source=source)
        if check_revocation(claims, account) is RevocationStatus.revoked:
            return _reject(ReasonCode.CREDENTIAL_REVOKED, claims=claims, source=source)

        # NOT_REVOKED -> ROLE_AUTHORIZED
        requested = ctx.requested_tenant_id
        tenant_id = None
        if requested is not None:
            tenant_id = normalize_tenant_id(requested)
            if tenant_id is None:
                return _reject(ReasonCode.TENANT_ID_MALFORMED, claims=claims, source=source)

        principal = self._resolver.resolve_account(account, tenant_id)
        if not self._authorized(principal, tenant_id, roles):
            return _reject(
                ReasonCode.ROLE_INSUFFICIENT, claims=claims, principal=principal, source=source
            )

        # ROLE_AUTHORIZED -> FORWARDED
        policy = self.cookie_policy(ctx)
        presented_mode = ctx.cookies.get(mode_cookie_name(self.cookie_name))
        reissue = source == "bearer" or presented_mode != policy.mode
        return GateDecision(
            state=GateState.FORWARDED,
            principal=principal,
            claims=claims,
            credential=credential,
            source=source,
            policy=policy,
            reissue=reissue,
        )

    @staticmethod
    def _authorized(
        principal: ResolvedPrincipal, requested_tenant_id: str | None, roles: Iterable[str] | None
    ) -> bool:
        if requested_tenant_id is not None and principal.tenant_id != requested_tenant_id:
            return False
        if roles is None:
            return True
        allowed = {role.strip().lower() for role in roles}
        return principal.role.value in allowed or (
            principal.membership_role is not None and principal.membership_role in allowed
        )


def set_session_cookies(
    response: Response, cookie_name: str, token: str, policy: CookiePolicy, max_age: int
) -> None:
    response.headers.append(
        "set-cookie", build_set_cookie_header(cookie_name, token, policy, max_age)
    )
    response.headers.append(
        "set-cookie",
        build_set_cookie_header(mode_cookie_name(cookie_name), policy.mode, policy, max_age),
    )


def clear_session_cookies(response: Response, cookie_name: str, policy: CookiePolicy) -> None:
    response.headers.append("set-cookie", build_clear_cookie_header(cookie_name, policy))
    response.headers.append(
        "set-cookie", build_clear_cookie_header(mode_cookie_name(cookie_name), policy)
    )


def get_gatekeeper(request: Request) -> RouteGatekeeper:
    """Resolve the `RouteGatekeeper` stored on the FastAPI application state."""
    gatekeeper: RouteGatekeeper = request.app.state.gatekeeper
    return gatekeeper


def require_principal(*roles: str) -> Callable[[Request, Response], GateDecision]:
    """Build a dependency that forwards only requests passing the gate.

    With no ``roles`` any authenticated principal passes; otherwise the
    principal's role or team-membership role must be listed.
    """
    required = roles or None

    def _dependency(request: Request, response: Response) -> GateDecision:
        gatekeeper = get_gatekeeper(request)
        decision = gatekeeper.evaluate(context_from_request(request), required)
        if not decision.forwarded:
            raise ApiError(decision.reason)

        request.state.principal = decision.principal
        if decision.reissue:
            remaining = decision.claims.expires_at - int(time.time())
            set_session_cookies(
                response, gatekeeper.cookie_name, decision.credential, decision.policy, remaining
            )
        return decision

    return _dependency
