"""Identity service orchestrating login, session issuance, revocation and auditing."""

from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime
import json
import logging
import time
from typing import Any, Mapping, Optional, Tuple

from .account import Account, ResolvedPrincipal, Role
from .contracts import ExternalUser, UpsertAccountInput, normalize_tenant_id
from .errors import ReasonCode
from .resolver import IdentityResolver
from ..repository import AccountRepository, AuditLogRecord
from ..security.rate_limiter import CounterStore
from ..security.revocation import RevocationStatus, check_revocation
from ..security.signature import verify_init_data
from ..security.tokens import SessionClaims, SessionCodec

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionGrant:
    """A freshly issued credential and the identity it was issued for."""

    token: str
    expires_in: int
    principal: ResolvedPrincipal
    account: Account


@dataclass(slots=True)
class LoginOutcome:
    """Result of a login attempt; ``reason`` is set when ``grant`` is absent."""

    grant: SessionGrant | None = None
    reason: ReasonCode | None = None
    user: ExternalUser | None = None
    created: bool = False

    @property
    def ok(self) -> bool:
        return self.grant is not None


class IdentityService:
    """Identity workflows backed by Postgres storage."""

    def __init__(
        self,
        repository: AccountRepository,
        codec: SessionCodec,
        *,
        bot_token: str,
        auth_max_age_seconds: int = 86400,
        counter_store: CounterStore | None = None,
    ) -> None:
        """Store dependencies used to orchestrate persistence and token issuance."""
        self._repository = repository
        self._codec = codec
        self._resolver = IdentityResolver(repository)
        self._bot_token = bot_token
        self._auth_max_age = auth_max_age_seconds
        self._counter_store = counter_store

    @property
    def resolver(self) -> IdentityResolver:
        return self._resolver

    def login_with_init_data(
        self,
        init_data: str | Mapping[str, Any],
        requested_tenant_id: str | None = None,
        *,
        now: float | None = None,
    ) -> LoginOutcome:
        """Exchange a signed platform payload for a session credential.

        An unseen external id creates a new ``user`` account; a known one has
        its profile fields refreshed from the payload.
        """
        result = verify_init_data(
            init_data, self._bot_token, max_age_seconds=self._auth_max_age, now=now
        )
        if not result.ok:
            self._audit_rejection(result.reason, None, {"auth_date": result.auth_date})
            return LoginOutcome(reason=result.reason)

        tenant_id = None
        if requested_tenant_id:
            tenant_id = normalize_tenant_id(requested_tenant_id)
            if tenant_id is None:
                self._audit_rejection(ReasonCode.TENANT_ID_MALFORMED, None, {})
                return LoginOutcome(reason=ReasonCode.TENANT_ID_MALFORMED, user=result.user)

        account, created = self._repository.upsert_account(UpsertAccountInput.from_external(result.user))
        if created:
            self._repository.write_audit_event(
                account_id=account.account_id,
                tenant_id=None,
                event_type="account.created",
                actor=account.account_id,
                metadata={"external_id": str(account.external_id)},
            )
        if account.is_deleted:
            self._audit_rejection(ReasonCode.ACCOUNT_DISABLED, account.account_id, {})
            return LoginOutcome(reason=ReasonCode.ACCOUNT_DISABLED, user=result.user)

        principal = self._resolver.resolve_account(account, tenant_id)
        if tenant_id and principal.tenant_id != tenant_id:
            self._audit_rejection(
                ReasonCode.ROLE_INSUFFICIENT, account.account_id, {"requested_tenant_id": tenant_id}
            )
            return LoginOutcome(reason=ReasonCode.ROLE_INSUFFICIENT, user=result.user)

        grant = self.issue_session(account, principal)
        self._repository.write_audit_event(
            account_id=account.account_id,
            tenant_id=principal.tenant_id,
            event_type="auth.login",
            actor=account.account_id,
            metadata={"role": principal.role.value, "created": created},
        )
        logger.info(
            "login accepted: account_id=%s role=%s tenant_id=%s created=%s",
            account.account_id,
            principal.role.value,
            principal.tenant_id,
            created,
        )
        return LoginOutcome(grant=grant, user=result.user, created=created)

    def issue_session(self, account: Account, principal: ResolvedPrincipal) -> SessionGrant:
        """Sign a credential embedding the account's current revocation stamp."""
        token, expires_in = self._codec.issue(
            SessionClaims(
                subject=account.account_id,
                tenant_id=principal.tenant_id,
                role=principal.role,
                is_staff=principal.is_staff,
                revocation_stamp=account.revocation_stamp,
            )
        )
        return SessionGrant(token=token, expires_in=expires_in, principal=principal, account=account)

    def revoke_sessions(self, account_id: str, *, actor: str, tenant_id: str | None = None) -> bool:
        """Rotate the account's stamp so every outstanding credential fails its next check."""
        stamp = self._repository.rotate_revocation_stamp(account_id)
        if stamp is None:
            return False
        self._repository.write_audit_event(
            account_id=account_id,
            tenant_id=tenant_id,
            event_type="session.revoked",
            actor=actor,
            metadata={"forced": actor != account_id},
        )
        logger.info("sessions revoked: account_id=%s actor=%s", account_id, actor)
        return True

    def change_role(self, account_id: str, role: Role, *, actor: str) -> Account | None:
        """Set a new role; the stamp rotates with it so old credentials stop working."""
        account = self._repository.update_role(account_id, role.value)
        if account is None:
            return None
        self._repository.write_audit_event(
            account_id=account_id,
            tenant_id=None,
            event_type="account.role_changed",
            actor=actor,
            metadata={"role": role.value},
        )
        return account

    def issue_magic_link(self, principal: ResolvedPrincipal) -> tuple[str, int] | None:
        """Mint a short-lived token that logs a browser into the caller's account."""
        account = self._repository.get_account(principal.account_id)
        if account is None or account.is_deleted:
            return None
        token, expires_in = self._codec.issue_magic(account.account_id, account.revocation_stamp)
        self._repository.write_audit_event(
            account_id=account.account_id,
            tenant_id=principal.tenant_id,
            event_type="auth.magic_link.issued",
            actor=account.account_id,
            metadata={"expires_in": expires_in},
        )
        return token, expires_in

    def exchange_magic_token(self, token: str) -> LoginOutcome:
        """Trade a magic-link token for a session credential, at most once."""
        claims = self._codec.verify_magic(token)
        if claims is None:
            return LoginOutcome(reason=ReasonCode.CREDENTIAL_MALFORMED_OR_EXPIRED)

        if self._counter_store is not None:
            window_ms = max(1, claims.expires_at * 1000 - int(time.time() * 1000))
            if self._counter_store.increment(f"magic:{claims.token_id}", window_ms).count > 1:
                self._audit_rejection(ReasonCode.CREDENTIAL_REVOKED, claims.subject, {"magic": True})
                return LoginOutcome(reason=ReasonCode.CREDENTIAL_REVOKED)

        account = self._repository.get_account(claims.subject)
        if account is None or account.is_deleted:
            return LoginOutcome(reason=ReasonCode.ACCOUNT_DISABLED)
        if check_revocation(claims, account) is RevocationStatus.revoked:
            self._audit_rejection(ReasonCode.CREDENTIAL_REVOKED, account.account_id, {"magic": True})
            return LoginOutcome(reason=ReasonCode.CREDENTIAL_REVOKED)

        principal = self._resolver.resolve_account(account)
        grant = self.issue_session(account, principal)
        self._repository.write_audit_event(
            account_id=account.account_id,
            tenant_id=principal.tenant_id,
            event_type="auth.magic_link.exchanged",
            actor=account.account_id,
            metadata={},
        )
        return LoginOutcome(grant=grant)

    def _audit_rejection(
        self, reason: ReasonCode | None, account_id: str | None, metadata: dict[str, Any]
    ) -> None:
        code = reason.value if reason else "UNKNOWN"
        logger.warning("authentication rejected: reason=%s account_id=%s", code, account_id)
        self._repository.write_audit_event(
            account_id=account_id,
            tenant_id=None,
            event_type="auth.rejected",
            actor=account_id,
            metadata={"reason": code, **metadata},
        )

    def list_audit_events(
        self,
        *,
        tenant_id: str | None,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogRecord], str | None]:
        """Return audit log records with optional filters and cursor pagination."""
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        records, next_cursor_tuple = self._repository.list_audit_events(
            tenant_id=tenant_id,
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=decoded_cursor,
        )
        next_cursor = self._encode_cursor(next_cursor_tuple) if next_cursor_tuple else None
        return records, next_cursor

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            created_at = datetime.fromisoformat(data["created_at"])
            audit_id = int(data["audit_id"])
            return created_at, audit_id
        except Exception as exc:
            raise ValueError("invalid cursor") from exc
