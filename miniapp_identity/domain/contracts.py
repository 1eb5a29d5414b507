"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Collection, Mapping

from pydantic import BaseModel, ConfigDict


class ExternalUser(BaseModel):
    """User object embedded (as JSON) in the chat-platform login payload."""

    model_config = ConfigDict(extra="ignore")

    id: int
    first_name: str | None = None
    last_name: str | None = None
    username: str | None = None
    language_code: str | None = None
    is_premium: bool = False
    photo_url: str | None = None


def normalize_tenant_id(value: str) -> str | None:
    """Return the canonical form of a UUID tenant id, or ``None`` when malformed."""
    try:
        return str(uuid.UUID(value))
    except (ValueError, AttributeError, TypeError):
        return None


@dataclass(frozen=True, slots=True)
class RequestContext:
    """Explicit view of the inbound request handed to every auth component.

    Header names are stored lowercased so lookups do not depend on the casing
    the client or proxy used.
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)
    path: str = "/"
    client_host: str | None = None

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    @property
    def host(self) -> str | None:
        return self.header("x-forwarded-host") or self.header("host")

    @property
    def proto(self) -> str | None:
        return self.header("x-forwarded-proto")

    @property
    def requested_tenant_id(self) -> str | None:
        value = self.header("x-tenant-id") or self.query.get("tenant_id")
        if value is None:
            return None
        value = value.strip()
        return value or None

    def client_address(self, trusted_proxies: Collection[str] = ()) -> str:
        """Address of the caller, used to key per-client rate limits.

        ``X-Forwarded-For`` is only consulted when the direct peer is one of
        ``trusted_proxies``. The right-most hop that is not a trusted proxy is
        the caller; every hop left of it is client supplied.
        """
        peer = self.client_host or "unknown"
        if peer.lower() not in trusted_proxies:
            return peer
        forwarded = self.header("x-forwarded-for") or ""
        for hop in reversed([part.strip() for part in forwarded.split(",")]):
            if hop and hop.lower() not in trusted_proxies:
                return hop
        return peer


@dataclass(slots=True)
class UpsertAccountInput:
    """Profile fields copied from a verified platform user."""

    external_id: int
    first_name: str | None
    last_name: str | None
    username: str | None
    language_code: str | None
    is_premium: bool

    @classmethod
    def from_external(cls, user: ExternalUser) -> "UpsertAccountInput":
        return cls(
            external_id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            username=user.username,
            language_code=user.language_code,
            is_premium=user.is_premium,
        )
