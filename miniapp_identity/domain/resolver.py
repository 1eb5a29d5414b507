"""Effective role and tenant computation for an account."""

from __future__ import annotations

import logging
from typing import Protocol

from .account import Account, ResolvedPrincipal, Role, STAFF_ROLES, TeamMembership, TenantProfile

logger = logging.getLogger(__name__)

_ROLE_ALIASES = {
    "root_admin": Role.super_admin,
    "superadmin": Role.super_admin,
    "admin": Role.super_admin,
    "merchant_owner": Role.merchant,
    "owner": Role.merchant,
    "end_user": Role.user,
}


def normalize_role(raw: str | None) -> Role:
    """Map a stored role string onto the canonical lowercase set.

    Unknown values fall back to ``Role.user``.
    """
    key = (raw or "").strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return Role(key)
    except ValueError:
        pass
    if key in _ROLE_ALIASES:
        return _ROLE_ALIASES[key]
    if key:
        logger.warning("unknown role %r normalised to %s", raw, Role.user.value)
    return Role.user


class IdentityStore(Protocol):
    def get_account(self, account_id: str) -> Account | None: ...

    def get_tenant_profile(self, tenant_id: str) -> TenantProfile | None: ...

    def get_tenant_profile_by_owner(self, account_id: str) -> TenantProfile | None: ...

    def get_first_membership(self, account_id: str) -> TeamMembership | None: ...


class IdentityResolver:
    """Compute a :class:`ResolvedPrincipal` from the stored relationships.

    Tenant resolution order, first match wins:

    1. a tenant explicitly requested by a staff account (oversight override);
    2. the tenant the account owns;
    3. the account's first team membership;
    4. none.

    A staff request for a tenant that does not exist resolves to no tenant
    rather than falling through to the staff member's own.
    """

    def __init__(self, store: IdentityStore) -> None:
        self._store = store

    def resolve(self, account_id: str, requested_tenant_id: str | None = None) -> ResolvedPrincipal | None:
        account = self._store.get_account(account_id)
        if account is None or account.is_deleted:
            return None
        return self.resolve_account(account, requested_tenant_id)

    def resolve_account(
        self, account: Account, requested_tenant_id: str | None = None
    ) -> ResolvedPrincipal:
        role = normalize_role(account.role)
        is_staff = role in STAFF_ROLES

        if is_staff and requested_tenant_id:
            tenant = self._store.get_tenant_profile(requested_tenant_id)
            return ResolvedPrincipal(
                account_id=account.account_id,
                role=role,
                is_staff=True,
                tenant_id=tenant.tenant_id if tenant else None,
            )

        owned = self._store.get_tenant_profile_by_owner(account.account_id)
        if owned is not None:
            return ResolvedPrincipal(
                account_id=account.account_id,
                role=role,
                is_staff=is_staff,
                tenant_id=owned.tenant_id,
            )

        # TODO: accounts seated on several tenants only ever see the oldest seat;
        # needs a tenant picker once product defines multi-seat behaviour.
        membership = self._store.get_first_membership(account.account_id)
        if membership is not None:
            return ResolvedPrincipal(
                account_id=account.account_id,
                role=role,
                is_staff=is_staff,
                tenant_id=membership.tenant_id,
                membership_role=membership.membership_role.strip().lower(),
            )

        return ResolvedPrincipal(
            account_id=account.account_id, role=role, is_staff=is_staff, tenant_id=None
        )
