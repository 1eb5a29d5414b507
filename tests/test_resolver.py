"""Tests for role normalisation and tenant resolution."""

from __future__ import annotations

import uuid

import pytest

from miniapp_identity.domain.account import Role
from miniapp_identity.domain.resolver import IdentityResolver, normalize_role
from miniapp_identity.security.revocation import RevocationStatus, check_revocation
from miniapp_identity.security.tokens import SessionClaims


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("super_admin", Role.super_admin),
        ("SUPER_ADMIN", Role.super_admin),
        ("Platform-Manager", Role.platform_manager),
        (" platform_support ", Role.platform_support),
        ("root_admin", Role.super_admin),
        ("merchant_owner", Role.merchant),
        ("merchant", Role.merchant),
        ("user", Role.user),
        ("wizard", Role.user),
        ("", Role.user),
        (None, Role.user),
    ],
)
def test_normalize_role(raw, expected):
    assert normalize_role(raw) is expected


def test_unknown_role_is_logged(caplog):
    with caplog.at_level("WARNING"):
        normalize_role("wizard")
    assert "wizard" in caplog.text


def test_owner_resolves_to_owned_tenant(repository):
    owner = repository.add_account(role="merchant")
    tenant = repository.add_tenant(owner)

    principal = IdentityResolver(repository).resolve(owner.account_id)
    assert principal.role is Role.merchant
    assert principal.tenant_id == tenant.tenant_id
    assert principal.membership_role is None
    assert not principal.is_staff


def test_ownership_wins_over_membership(repository):
    account = repository.add_account(role="merchant")
    owned = repository.add_tenant(account)
    other_owner = repository.add_account(role="merchant")
    other = repository.add_tenant(other_owner)
    repository.add_membership(account, other, role="agent", age_days=30)

    principal = IdentityResolver(repository).resolve(account.account_id)
    assert principal.tenant_id == owned.tenant_id
    assert principal.membership_role is None


def test_oldest_membership_is_used(repository):
    agent = repository.add_account()
    first_owner, second_owner = repository.add_account(), repository.add_account()
    newer = repository.add_tenant(first_owner)
    older = repository.add_tenant(second_owner)
    repository.add_membership(agent, newer, role="viewer", age_days=1)
    repository.add_membership(agent, older, role="Agent", age_days=10)

    principal = IdentityResolver(repository).resolve(agent.account_id)
    assert principal.tenant_id == older.tenant_id
    assert principal.membership_role == "agent"
    assert principal.role is Role.user


def test_unaffiliated_user_has_no_tenant(repository):
    account = repository.add_account()
    principal = IdentityResolver(repository).resolve(account.account_id)
    assert principal.tenant_id is None
    assert principal.role is Role.user


def test_staff_override_selects_requested_tenant(repository):
    admin = repository.add_account(role="super_admin")
    repository.add_tenant(admin, name="Admin shop")
    merchant = repository.add_account(role="merchant")
    target = repository.add_tenant(merchant)

    principal = IdentityResolver(repository).resolve(admin.account_id, target.tenant_id)
    assert principal.is_staff
    assert principal.tenant_id == target.tenant_id


def test_staff_override_for_missing_tenant_does_not_fall_through(repository):
    admin = repository.add_account(role="platform_manager")
    repository.add_tenant(admin)

    principal = IdentityResolver(repository).resolve(admin.account_id, str(uuid.uuid4()))
    assert principal.is_staff
    assert principal.tenant_id is None


def test_non_staff_request_for_foreign_tenant_is_ignored(repository):
    merchant = repository.add_account(role="merchant")
    own = repository.add_tenant(merchant)
    other = repository.add_tenant(repository.add_account(role="merchant"))

    principal = IdentityResolver(repository).resolve(merchant.account_id, other.tenant_id)
    assert principal.tenant_id == own.tenant_id


def test_legacy_role_alias_counts_as_staff(repository):
    admin = repository.add_account(role="root_admin")
    principal = IdentityResolver(repository).resolve(admin.account_id)
    assert principal.role is Role.super_admin
    assert principal.is_staff


def test_missing_or_deleted_account_resolves_to_none(repository):
    deleted = repository.add_account(deleted=True)
    resolver = IdentityResolver(repository)
    assert resolver.resolve(deleted.account_id) is None
    assert resolver.resolve("nope") is None


def _claims(stamp: str | None) -> SessionClaims:
    return SessionClaims(
        subject="acc", tenant_id=None, role=Role.user, is_staff=False, revocation_stamp=stamp
    )


def test_matching_stamp_is_valid(repository):
    account = repository.add_account(revocation_stamp="s1")
    assert check_revocation(_claims("s1"), account) is RevocationStatus.valid


def test_rotated_stamp_revokes(repository):
    account = repository.add_account(revocation_stamp="s1")
    repository.rotate_revocation_stamp(account.account_id)
    assert check_revocation(_claims("s1"), account) is RevocationStatus.revoked


def test_credential_without_stamp_is_revoked_once_account_has_one(repository):
    account = repository.add_account(revocation_stamp="s1")
    assert check_revocation(_claims(None), account) is RevocationStatus.revoked


def test_account_without_stamp_skips_check(repository):
    account = repository.add_account(revocation_stamp=None)
    assert check_revocation(_claims("anything"), account) is RevocationStatus.valid
