"""Verification of chat-platform login payloads ("init data").

The platform signs every payload it hands to the mini app with a key derived
from the bot token:

    secret_key = HMAC_SHA256(key=b"WebAppData", msg=bot_token)
    hash       = hex(HMAC_SHA256(key=secret_key, msg=check_string))

where ``check_string`` is every field except ``hash``, sorted by key, rendered
as ``key=value`` and joined by newlines.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import parse_qsl

from pydantic import ValidationError

from ..domain.contracts import ExternalUser
from ..domain.errors import ReasonCode

logger = logging.getLogger(__name__)

WEB_APP_KEY = b"WebAppData"
DEFAULT_MAX_AGE_SECONDS = 86400


@dataclass(frozen=True, slots=True)
class SignatureResult:
    """Outcome of a payload verification; ``reason`` is set when ``ok`` is false."""

    ok: bool
    user: ExternalUser | None = None
    reason: ReasonCode | None = None
    auth_date: int | None = None
    query_id: str | None = None
    start_param: str | None = None

    @classmethod
    def reject(cls, reason: ReasonCode, auth_date: int | None = None) -> "SignatureResult":
        return cls(ok=False, reason=reason, auth_date=auth_date)


def serialize_field(value: Any) -> str:
    """Render a field value exactly as the platform did when it signed it.

    Nested objects use compact JSON with raw unicode and escaped forward
    slashes; a single differing byte breaks the signature.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or value is None or isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False).replace("/", "\\/")
    return str(value)


def parse_init_data(payload: str | Mapping[str, Any]) -> dict[str, str]:
    """Return the payload as a flat ``str -> str`` mapping."""
    if isinstance(payload, str):
        return dict(parse_qsl(payload, keep_blank_values=True))
    return {str(key): serialize_field(value) for key, value in payload.items()}


def build_check_string(fields: Mapping[str, str]) -> str:
    return "\n".join(f"{key}={fields[key]}" for key in sorted(fields) if key != "hash")


def derive_secret_key(bot_token: str | bytes) -> bytes:
    token = bot_token.encode("utf-8") if isinstance(bot_token, str) else bot_token
    return hmac.new(WEB_APP_KEY, token, hashlib.sha256).digest()


def sign_fields(fields: Mapping[str, str], bot_token: str | bytes) -> str:
    """Return the hex signature the platform would attach to ``fields``."""
    check_string = build_check_string(fields)
    return hmac.new(
        derive_secret_key(bot_token), check_string.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def verify_init_data(
    payload: str | Mapping[str, Any],
    bot_token: str | bytes,
    *,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    now: float | None = None,
) -> SignatureResult:
    """Check that ``payload`` was signed with ``bot_token`` and is fresh.

    Parameters
    ----------
    payload:
        Raw URL-encoded init data, or an already-decoded field mapping.
    bot_token:
        Shared secret issued by the platform operator.
    max_age_seconds:
        Replay window; a payload whose ``auth_date`` is further than this from
        ``now`` in either direction is rejected regardless of its signature.
    now:
        Unix time override, used by tests.

    Returns
    -------
    SignatureResult
        Never raises for a bad payload; the failure is carried in ``reason``.
    """
    fields = parse_init_data(payload)

    supplied_hash = fields.get("hash")
    if not supplied_hash:
        return SignatureResult.reject(ReasonCode.PAYLOAD_MALFORMED)

    try:
        auth_date = int(fields["auth_date"])
    except (KeyError, ValueError):
        return SignatureResult.reject(ReasonCode.PAYLOAD_MALFORMED)

    current = time.time() if now is None else now
    if abs(current - auth_date) > max_age_seconds:
        logger.info("init data outside temporal window: auth_date=%s", auth_date)
        return SignatureResult.reject(ReasonCode.TEMPORAL_WINDOW_EXCEEDED, auth_date)

    expected = sign_fields(fields, bot_token)
    supplied = supplied_hash.encode("utf-8")
    if not hmac.compare_digest(expected.encode("ascii"), supplied):
        return SignatureResult.reject(ReasonCode.SIGNATURE_MISMATCH, auth_date)

    raw_user = fields.get("user")
    if not raw_user:
        return SignatureResult.reject(ReasonCode.PAYLOAD_MALFORMED, auth_date)
    try:
        user = ExternalUser.model_validate_json(raw_user)
    except ValidationError:
        return SignatureResult.reject(ReasonCode.PAYLOAD_MALFORMED, auth_date)

    return SignatureResult(
        ok=True,
        user=user,
        auth_date=auth_date,
        query_id=fields.get("query_id"),
        start_param=fields.get("start_param"),
    )
