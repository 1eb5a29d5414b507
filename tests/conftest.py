from __future__ import annotations

import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from miniapp_identity.api.gatekeeper import RouteGatekeeper
from miniapp_identity.domain.account import Account, TeamMembership, TenantProfile
from miniapp_identity.domain.contracts import UpsertAccountInput
from miniapp_identity.domain.service import IdentityService
from miniapp_identity.main import create_app
from miniapp_identity.repository import AuditLogRecord, new_revocation_stamp
from miniapp_identity.security.rate_limiter import FixedWindowRateLimiter, InMemoryCounterStore
from miniapp_identity.security.signature import sign_fields
from miniapp_identity.security.tokens import SessionCodec

BOT_TOKEN = "123456789:AAE-test-bot-token"
JWT_SECRET = "test-secret-that-is-long-enough-for-hs256-keys"
COOKIE_NAME = "auth_token"
LOCAL_HEADERS = {"X-Forwarded-Host": "localhost:3000", "X-Forwarded-Proto": "http"}


class FakeRepository:
    """In-memory repository mimicking Postgres-backed behaviors."""

    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}
        self.tenants: dict[str, TenantProfile] = {}
        self.memberships: list[TeamMembership] = []
        self.audit_log: list[AuditLogRecord] = []
        self._audit_seq = 0

    # -- seeding helpers -------------------------------------------------

    def add_account(
        self,
        *,
        external_id: int | None = None,
        role: str = "user",
        revocation_stamp: str | None = "stamp-0",
        deleted: bool = False,
    ) -> Account:
        account = Account(
            account_id=str(uuid.uuid4()),
            external_id=external_id if external_id is not None else 1000 + len(self.accounts),
            role=role,
            revocation_stamp=revocation_stamp,
            created_at=datetime.now(timezone.utc),
            deleted_at=datetime.now(timezone.utc) if deleted else None,
        )
        self.accounts[account.account_id] = account
        return account

    def add_tenant(self, owner: Account, name: str = "Shop") -> TenantProfile:
        tenant = TenantProfile(
            tenant_id=str(uuid.uuid4()),
            owner_account_id=owner.account_id,
            name=name,
            status="active",
        )
        self.tenants[tenant.tenant_id] = tenant
        return tenant

    def add_membership(
        self, account: Account, tenant: TenantProfile, role: str = "agent", age_days: int = 0
    ) -> TeamMembership:
        membership = TeamMembership(
            account_id=account.account_id,
            tenant_id=tenant.tenant_id,
            membership_role=role,
            created_at=datetime.now(timezone.utc) - timedelta(days=age_days),
        )
        self.memberships.append(membership)
        return membership

    # -- repository interface --------------------------------------------

    def get_account(self, account_id: str) -> Account | None:
        return self.accounts.get(account_id)

    def upsert_account(self, payload: UpsertAccountInput):
        account = next(
            (a for a in self.accounts.values() if a.external_id == payload.external_id), None
        )
        created = account is None
        if account is None:
            account = Account(
                account_id=str(uuid.uuid4()),
                external_id=payload.external_id,
                role="user",
                revocation_stamp=new_revocation_stamp(),
                created_at=datetime.now(timezone.utc),
            )
            self.accounts[account.account_id] = account
        account.first_name = payload.first_name
        account.last_name = payload.last_name
        account.username = payload.username
        account.language_code = payload.language_code
        account.is_premium = payload.is_premium
        return account, created

    def rotate_revocation_stamp(self, account_id: str) -> str | None:
        account = self.accounts.get(account_id)
        if account is None:
            return None
        account.revocation_stamp = new_revocation_stamp()
        return account.revocation_stamp

    def update_role(self, account_id: str, role: str) -> Account | None:
        account = self.accounts.get(account_id)
        if account is None:
            return None
        account.role = role
        account.revocation_stamp = new_revocation_stamp()
        return account

    def get_tenant_profile(self, tenant_id: str) -> TenantProfile | None:
        return self.tenants.get(tenant_id)

    def get_tenant_profile_by_owner(self, account_id: str) -> TenantProfile | None:
        for tenant in self.tenants.values():
            if tenant.owner_account_id == account_id:
                return tenant
        return None

    def get_first_membership(self, account_id: str) -> TeamMembership | None:
        seats = [m for m in self.memberships if m.account_id == account_id]
        seats.sort(key=lambda m: m.created_at)
        return seats[0] if seats else None

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        tenant_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict | None = None,
    ) -> None:
        self._audit_seq += 1
        self.audit_log.append(
            AuditLogRecord(
                audit_id=self._audit_seq,
                account_id=account_id,
                tenant_id=tenant_id,
                event_type=event_type,
                actor=actor,
                metadata=metadata or {},
                created_at=datetime.now(timezone.utc),
            )
        )

    def list_audit_events(
        self,
        *,
        tenant_id: str | None = None,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: tuple[datetime, int] | None = None,
    ):
        results = list(self.audit_log)
        if tenant_id:
            results = [record for record in results if record.tenant_id == tenant_id]
        if account_id:
            results = [record for record in results if record.account_id == account_id]
        if event_type:
            results = [record for record in results if record.event_type == event_type]
        if created_after:
            results = [record for record in results if record.created_at >= created_after]
        if created_before:
            results = [record for record in results if record.created_at <= created_before]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [record for record in results if (record.created_at, record.audit_id) < cursor]
        slice_ = results[:limit]
        next_cursor = None
        if len(results) > limit:
            last = slice_[-1]
            next_cursor = (last.created_at, last.audit_id)
        return slice_, next_cursor

    def events(self, event_type: str) -> list[AuditLogRecord]:
        return [record for record in self.audit_log if record.event_type == event_type]


def make_init_data(
    user: dict | None = None,
    *,
    auth_date: int | None = None,
    bot_token: str = BOT_TOKEN,
    **extra: str,
) -> str:
    """Build a URL-encoded login payload signed the way the platform signs it."""
    user = user if user is not None else {"id": 42, "first_name": "Ada", "username": "ada"}
    fields = {
        "auth_date": str(int(time.time()) if auth_date is None else auth_date),
        "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
        "user": json.dumps(user, separators=(",", ":"), ensure_ascii=False).replace("/", "\\/"),
        **extra,
    }
    fields["hash"] = sign_fields(fields, bot_token)
    return urlencode(fields)


def cookie_header(token: str, mode: str | None = "cross_site") -> dict[str, str]:
    """Send the session cookie explicitly; the test client drops Secure cookies over http."""
    value = f"{COOKIE_NAME}={token}"
    if mode:
        value += f"; {COOKIE_NAME}_mode={mode}"
    return {"Cookie": value}


def bearer_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def codec() -> SessionCodec:
    return SessionCodec(
        secret=JWT_SECRET,
        issuer="miniapp.identity",
        staff_ttl_seconds=8 * 3600,
        merchant_ttl_seconds=7 * 86400,
        user_ttl_seconds=7 * 86400,
        magic_ttl_seconds=300,
    )


@pytest.fixture
def service(repository: FakeRepository, codec: SessionCodec) -> IdentityService:
    return IdentityService(
        repository,  # type: ignore[arg-type]
        codec,
        bot_token=BOT_TOKEN,
        counter_store=InMemoryCounterStore(),
    )


@pytest.fixture
def gatekeeper(repository: FakeRepository, codec: SessionCodec) -> RouteGatekeeper:
    return RouteGatekeeper(codec, repository, cookie_name=COOKIE_NAME)


@pytest.fixture
def app(service: IdentityService, gatekeeper: RouteGatekeeper) -> FastAPI:
    app = create_app(with_lifespan=False)
    app.state.identity_service = service
    app.state.gatekeeper = gatekeeper
    app.state.rate_limiter = FixedWindowRateLimiter(
        InMemoryCounterStore(), max_requests=3, window_seconds=60
    )
    app.state.trusted_proxies = ()
    app.state.login_path = "/dashboard/login"
    return app


@pytest.fixture
def api_client(app: FastAPI):
    """Provide a FastAPI test client with isolated state."""
    with TestClient(app, raise_server_exceptions=False) as client:
        yield client


@pytest.fixture
def issue_token(service: IdentityService):
    """Issue a session credential for a seeded account, as a login would."""

    def _issue(account: Account, requested_tenant_id: str | None = None) -> str:
        principal = service.resolver.resolve_account(account, requested_tenant_id)
        return service.issue_session(account, principal).token

    return _issue
