from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Canonical lowercase role set every RBAC decision compares against."""

    super_admin = "super_admin"
    platform_manager = "platform_manager"
    platform_support = "platform_support"
    merchant = "merchant"
    user = "user"


STAFF_ROLES = frozenset({Role.super_admin, Role.platform_manager, Role.platform_support})


@dataclass(slots=True)
class Account:
    """Aggregate root for a chat-platform end user."""

    account_id: str
    external_id: int
    role: str
    revocation_stamp: str | None
    created_at: datetime
    first_name: str | None = None
    last_name: str | None = None
    username: str | None = None
    language_code: str | None = None
    is_premium: bool = False
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(slots=True)
class TenantProfile:
    """Merchant storefront owned outright by a single account."""

    tenant_id: str
    owner_account_id: str
    name: str
    status: str


@dataclass(slots=True)
class TeamMembership:
    """Staff seat on a tenant, distinct from ownership."""

    account_id: str
    tenant_id: str
    membership_role: str
    created_at: datetime


@dataclass(slots=True, frozen=True)
class ResolvedPrincipal:
    """Effective identity of a request once role and tenant are computed."""

    account_id: str
    role: Role
    is_staff: bool
    tenant_id: str | None
    membership_role: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "account_id": self.account_id,
            "role": self.role.value,
            "is_staff": self.is_staff,
            "tenant_id": self.tenant_id,
            "membership_role": self.membership_role,
        }
