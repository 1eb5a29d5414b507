"""Database repository for identity/account data."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from psycopg.rows import tuple_row
from psycopg_pool import ConnectionPool
from psycopg.types.json import Json

from .domain.account import Account, TeamMembership, TenantProfile
from .domain.contracts import UpsertAccountInput

_ACCOUNT_COLUMNS = """
    account_id, external_id, role, revocation_stamp, created_at,
    first_name, last_name, username, language_code, is_premium, deleted_at
"""


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in identity_audit_log."""

    audit_id: int
    account_id: str | None
    tenant_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


def new_revocation_stamp() -> str:
    return uuid.uuid4().hex


class AccountRepository:
    """Postgres-backed persistence for accounts, tenants and memberships."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def get_account(self, account_id: str) -> Account | None:
        """Fetch an account by internal id, soft-deleted rows included."""
        return self._fetch_account("account_id = %s", (account_id,))

    def _fetch_account(self, where_sql: str, params: tuple) -> Account | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {where_sql}", params)
                row = cur.fetchone()
                if not row:
                    return None
        return self._map_account(row)

    def upsert_account(self, payload: UpsertAccountInput) -> Tuple[Account, bool]:
        """Create the account for an unseen external id or refresh its profile.

        Returns a tuple of (account, created flag). New rows start with the
        ``user`` role and a fresh revocation stamp.
        """
        now = datetime.now(timezone.utc)
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    INSERT INTO accounts (
                        account_id, external_id, role, revocation_stamp,
                        first_name, last_name, username, language_code, is_premium,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, 'user', %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (external_id) DO UPDATE SET
                        first_name = EXCLUDED.first_name,
                        last_name = EXCLUDED.last_name,
                        username = EXCLUDED.username,
                        language_code = EXCLUDED.language_code,
                        is_premium = EXCLUDED.is_premium,
                        updated_at = EXCLUDED.updated_at
                    RETURNING {_ACCOUNT_COLUMNS}, (xmax = 0) AS inserted
                    """,
                    (
                        str(uuid.uuid4()),
                        payload.external_id,
                        new_revocation_stamp(),
                        payload.first_name,
                        payload.last_name,
                        payload.username,
                        payload.language_code,
                        payload.is_premium,
                        now,
                        now,
                    ),
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_account(row[:-1]), bool(row[-1])

    def rotate_revocation_stamp(self, account_id: str) -> str | None:
        """Replace the account's stamp, invalidating every credential issued before."""
        stamp = new_revocation_stamp()
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE accounts
                    SET revocation_stamp = %s, updated_at = NOW()
                    WHERE account_id = %s
                    """,
                    (stamp, account_id),
                )
                updated = cur.rowcount
                conn.commit()
        return stamp if updated else None

    def update_role(self, account_id: str, role: str) -> Account | None:
        """Change an account's role and rotate its stamp in one row update."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE accounts
                    SET role = %s, revocation_stamp = %s, updated_at = NOW()
                    WHERE account_id = %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (role, new_revocation_stamp(), account_id),
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_account(row) if row else None

    def get_tenant_profile(self, tenant_id: str) -> TenantProfile | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT tenant_id, owner_account_id, name, status
                    FROM tenant_profiles
                    WHERE tenant_id = %s
                    """,
                    (tenant_id,),
                )
                row = cur.fetchone()
        return TenantProfile(*map(str, row)) if row else None

    def get_tenant_profile_by_owner(self, account_id: str) -> TenantProfile | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT tenant_id, owner_account_id, name, status
                    FROM tenant_profiles
                    WHERE owner_account_id = %s
                    """,
                    (account_id,),
                )
                row = cur.fetchone()
        return TenantProfile(*map(str, row)) if row else None

    def get_first_membership(self, account_id: str) -> TeamMembership | None:
        """Return the oldest team seat held by the account, if any."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT account_id, tenant_id, membership_role, created_at
                    FROM team_memberships
                    WHERE account_id = %s
                    ORDER BY created_at ASC, membership_id ASC
                    LIMIT 1
                    """,
                    (account_id,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return TeamMembership(
            account_id=str(row[0]),
            tenant_id=str(row[1]),
            membership_role=row[2],
            created_at=row[3],
        )

    def _map_account(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=str(row[0]),
            external_id=int(row[1]),
            role=row[2],
            revocation_stamp=row[3],
            created_at=row[4],
            first_name=row[5],
            last_name=row[6],
            username=row[7],
            language_code=row[8],
            is_premium=bool(row[9]),
            deleted_at=row[10],
        )

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        tenant_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing identity workflow activity."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO identity_audit_log (account_id, tenant_id, event_type, actor, metadata)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (account_id, tenant_id, event_type, actor, Json(metadata or {})),
                )
                conn.commit()

    def list_audit_events(
        self,
        *,
        tenant_id: str | None = None,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]:
        """Return audit log entries with optional filters and cursor pagination.

        ``tenant_id=None`` spans every tenant and is reserved for staff callers.
        """
        limit = max(1, min(limit, 100))
        clauses = ["TRUE"]
        params: list[Any] = []

        if tenant_id:
            clauses.append("tenant_id = %s")
            params.append(tenant_id)
        if account_id:
            clauses.append("account_id = %s")
            params.append(account_id)
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if created_after:
            clauses.append("created_at >= %s")
            params.append(created_after)
        if created_before:
            clauses.append("created_at <= %s")
            params.append(created_before)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT audit_id, account_id, tenant_id, event_type, actor, metadata, created_at
            FROM identity_audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit)

        records: list[AuditLogRecord] = []
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                for row in cur.fetchall():
                    records.append(
                        AuditLogRecord(
                            audit_id=row[0],
                            account_id=str(row[1]) if row[1] is not None else None,
                            tenant_id=str(row[2]) if row[2] is not None else None,
                            event_type=row[3],
                            actor=row[4],
                            metadata=row[5] or {},
                            created_at=row[6],
                        )
                    )

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor
