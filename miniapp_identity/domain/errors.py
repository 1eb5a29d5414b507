"""Machine-readable rejection codes and their HTTP status mapping."""

from __future__ import annotations

from enum import Enum


class ReasonCode(str, Enum):
    PAYLOAD_MALFORMED = "PAYLOAD_MALFORMED"
    SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"
    TEMPORAL_WINDOW_EXCEEDED = "TEMPORAL_WINDOW_EXCEEDED"
    CREDENTIAL_MISSING = "CREDENTIAL_MISSING"
    CREDENTIAL_MALFORMED_OR_EXPIRED = "CREDENTIAL_MALFORMED_OR_EXPIRED"
    CREDENTIAL_REVOKED = "CREDENTIAL_REVOKED"
    ACCOUNT_DISABLED = "ACCOUNT_DISABLED"
    TENANT_ID_MALFORMED = "TENANT_ID_MALFORMED"
    ROLE_INSUFFICIENT = "ROLE_INSUFFICIENT"
    RATE_LIMITED = "RATE_LIMITED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    @property
    def http_status(self) -> int:
        return _STATUS_BY_CODE[self]


_STATUS_BY_CODE = {
    ReasonCode.PAYLOAD_MALFORMED: 401,
    ReasonCode.SIGNATURE_MISMATCH: 401,
    ReasonCode.TEMPORAL_WINDOW_EXCEEDED: 401,
    ReasonCode.CREDENTIAL_MISSING: 401,
    ReasonCode.CREDENTIAL_MALFORMED_OR_EXPIRED: 401,
    ReasonCode.CREDENTIAL_REVOKED: 401,
    ReasonCode.ACCOUNT_DISABLED: 401,
    ReasonCode.TENANT_ID_MALFORMED: 400,
    ReasonCode.ROLE_INSUFFICIENT: 403,
    ReasonCode.RATE_LIMITED: 429,
    ReasonCode.VALIDATION_ERROR: 422,
    ReasonCode.NOT_FOUND: 404,
    ReasonCode.INTERNAL_ERROR: 500,
}

# Reasons that mean "the browser holds a dead session" rather than "never logged in".
SESSION_EXPIRED_REASONS = frozenset(
    {
        ReasonCode.CREDENTIAL_MALFORMED_OR_EXPIRED,
        ReasonCode.CREDENTIAL_REVOKED,
        ReasonCode.ACCOUNT_DISABLED,
    }
)
