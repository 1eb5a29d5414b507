"""Cookie attribute selection for same-origin and embedded (cross-site) clients."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable
from urllib.parse import urlsplit

MODE_CROSS_SITE = "cross_site"
MODE_LOCAL = "local"


@dataclass(frozen=True, slots=True)
class CookiePolicy:
    secure: bool
    same_site: str
    partitioned: bool
    domain: str | None = None

    @property
    def mode(self) -> str:
        return MODE_CROSS_SITE if self.partitioned else MODE_LOCAL


def normalize_host(host: str | None) -> str:
    """Reduce a Host / X-Forwarded-Host value to a bare lowercase hostname."""
    normalized = (host or "").split(",")[0].strip().lower()
    if not normalized:
        return ""
    if "://" in normalized:
        return (urlsplit(normalized).hostname or "").lower()
    normalized = normalized.split("/")[0]
    if normalized.startswith("["):
        return normalized[1:].split("]")[0]
    if normalized.count(":") == 1:
        normalized = normalized.split(":")[0]
    return normalized


def is_local_host(host: str, local_hosts: Iterable[str]) -> bool:
    if not host:
        return False
    if host in set(local_hosts):
        return True
    return host.endswith(".localhost")


def select_cookie_policy(
    host_header: str | None,
    proto_header: str | None,
    *,
    local_hosts: Iterable[str] = ("localhost", "127.0.0.1", "::1"),
    domain: str | None = None,
) -> CookiePolicy:
    """Derive cookie attributes from the request's declared host and protocol.

    Only plain-HTTP local development relaxes the policy; every other context
    may be an embedded frame on a foreign origin and needs
    ``SameSite=None; Secure; Partitioned``.
    """
    host = normalize_host(host_header)
    proto = (proto_header or "").split(",")[0].strip().lower()
    if is_local_host(host, local_hosts) and proto != "https":
        return CookiePolicy(secure=False, same_site="lax", partitioned=False)
    return CookiePolicy(secure=True, same_site="none", partitioned=True, domain=domain)


def _attributes(policy: CookiePolicy, max_age: int, http_only: bool) -> list[str]:
    parts = ["Path=/", f"Max-Age={max_age}"]
    if policy.domain:
        parts.append(f"Domain={policy.domain}")
    if http_only:
        parts.append("HttpOnly")
    if policy.secure:
        parts.append("Secure")
    parts.append(f"SameSite={policy.same_site.capitalize()}")
    if policy.partitioned:
        parts.append("Partitioned")
    return parts


def build_set_cookie_header(
    name: str, value: str, policy: CookiePolicy, max_age: int, *, http_only: bool = True
) -> str:
    """Render a ``Set-Cookie`` value, including ``Partitioned`` when required."""
    return "; ".join([f"{name}={value}", *_attributes(policy, max(0, int(max_age)), http_only)])


def build_clear_cookie_header(name: str, policy: CookiePolicy) -> str:
    return "; ".join(
        [f'{name}=""', "Expires=Thu, 01 Jan 1970 00:00:00 GMT", *_attributes(policy, 0, True)]
    )


def mode_cookie_name(session_cookie_name: str) -> str:
    return f"{session_cookie_name}_mode"
