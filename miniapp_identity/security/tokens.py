"""Utilities for issuing and validating session credentials (JWTs)."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any

import jwt

from ..domain.account import Role, STAFF_ROLES

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SESSION_TOKEN_TYPE = "session"
MAGIC_TOKEN_TYPE = "magic"


@dataclass(frozen=True, slots=True)
class SessionClaims:
    """Claims carried by a session credential."""

    subject: str
    tenant_id: str | None
    role: Role
    is_staff: bool
    revocation_stamp: str | None
    issued_at: int | None = None
    expires_at: int | None = None


@dataclass(frozen=True, slots=True)
class MagicClaims:
    """Claims carried by a single-use browser login link."""

    subject: str
    revocation_stamp: str | None
    token_id: str
    expires_at: int


class SessionCodec:
    """Stateless issue/verify of signed, time-boxed credentials.

    Revocation is not checked here; it needs a fresh account read
    and belongs to :func:`miniapp_identity.security.revocation.check_revocation`.
    """

    def __init__(
        self,
        *,
        secret: str,
        issuer: str,
        staff_ttl_seconds: int,
        merchant_ttl_seconds: int,
        user_ttl_seconds: int,
        magic_ttl_seconds: int = 300,
    ) -> None:
        self._secret = secret
        self._issuer = issuer
        self._ttls = {
            "staff": staff_ttl_seconds,
            Role.merchant: merchant_ttl_seconds,
            Role.user: user_ttl_seconds,
        }
        self._magic_ttl = magic_ttl_seconds

    @classmethod
    def from_settings(cls, settings: Any) -> "SessionCodec":
        return cls(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            staff_ttl_seconds=settings.session_ttl_staff_seconds,
            merchant_ttl_seconds=settings.session_ttl_merchant_seconds,
            user_ttl_seconds=settings.session_ttl_user_seconds,
            magic_ttl_seconds=settings.magic_link_ttl_seconds,
        )

    def ttl_for(self, role: Role) -> int:
        """Return the session lifetime for a role tier."""
        if role in STAFF_ROLES:
            return self._ttls["staff"]
        return self._ttls.get(role, self._ttls[Role.user])

    def issue(self, claims: SessionClaims, *, now: int | None = None) -> tuple[str, int]:
        """Create a signed session credential.

        Parameters
        ----------
        claims:
            Identity to embed; ``issued_at``/``expires_at`` are ignored and
            recomputed from the role tier.
        now:
            Unix time override, used by tests.

        Returns
        -------
        tuple[str, int]
            The encoded JWT string and its TTL (in seconds).
        """
        issued_at = int(time.time()) if now is None else int(now)
        expires_in = self.ttl_for(claims.role)
        payload: dict[str, Any] = {
            "iss": self._issuer,
            "typ": SESSION_TOKEN_TYPE,
            "sub": claims.subject,
            "tenant_id": claims.tenant_id,
            "role": claims.role.value,
            "is_staff": claims.is_staff,
            "stamp": claims.revocation_stamp,
            "iat": issued_at,
            "exp": issued_at + expires_in,
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM), expires_in

    def verify(self, token: str) -> SessionClaims | None:
        """Return the claims of a valid, unexpired session credential, else ``None``."""
        payload = self._decode(token)
        if payload is None or payload.get("typ") != SESSION_TOKEN_TYPE:
            return None
        try:
            return SessionClaims(
                subject=str(payload["sub"]),
                tenant_id=payload.get("tenant_id"),
                role=Role(payload["role"]),
                is_staff=bool(payload.get("is_staff", False)),
                revocation_stamp=payload.get("stamp"),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, ValueError, TypeError):
            logger.debug("session token carried unusable claims")
            return None

    def issue_magic(self, subject: str, revocation_stamp: str | None, *, now: int | None = None) -> tuple[str, int]:
        """Create a short-lived token exchangeable once for a browser session."""
        issued_at = int(time.time()) if now is None else int(now)
        payload = {
            "iss": self._issuer,
            "typ": MAGIC_TOKEN_TYPE,
            "sub": subject,
            "stamp": revocation_stamp,
            "jti": uuid.uuid4().hex,
            "iat": issued_at,
            "exp": issued_at + self._magic_ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM), self._magic_ttl

    def verify_magic(self, token: str) -> MagicClaims | None:
        payload = self._decode(token)
        if payload is None or payload.get("typ") != MAGIC_TOKEN_TYPE:
            return None
        try:
            return MagicClaims(
                subject=str(payload["sub"]),
                revocation_stamp=payload.get("stamp"),
                token_id=str(payload["jti"]),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, ValueError, TypeError):
            return None

    def _decode(self, token: str) -> dict[str, Any] | None:
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                issuer=self._issuer,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            logger.debug("credential expired")
        except jwt.PyJWTError as exc:
            logger.debug("credential rejected: %s", type(exc).__name__)
        return None
