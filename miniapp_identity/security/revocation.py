"""Force-logout detection by comparing revocation stamps."""

from __future__ import annotations

from enum import Enum

from ..domain.account import Account
from .tokens import MagicClaims, SessionClaims


class RevocationStatus(str, Enum):
    valid = "valid"
    revoked = "revoked"


def check_revocation(claims: SessionClaims | MagicClaims, account: Account) -> RevocationStatus:
    """Compare the stamp embedded at issuance with the account's current stamp.

    Accounts that have never had a stamp recorded skip the check.
    """
    if account.revocation_stamp is None:
        return RevocationStatus.valid
    if claims.revocation_stamp == account.revocation_stamp:
        return RevocationStatus.valid
    return RevocationStatus.revoked
