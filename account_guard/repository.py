"""Persistence for namespaced account state and the account audit trail."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Optional, Protocol, Tuple

from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool
from redis import Redis

AuditCursor = Tuple[datetime, int]


@dataclass(slots=True)
class AuditLogRecord:
    """Single entry of an account's audit trail."""

    audit_id: int
    account_id: str
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AccountStore(Protocol):
    """Key-value store addressed by ``(account_id, namespace)``."""

    def load(self, account_id: str, namespace: str) -> dict[str, Any] | None: ...

    def save(self, account_id: str, namespace: str, state: dict[str, Any]) -> None: ...

    def namespaces(self, account_id: str) -> list[str]: ...

    def write_audit_event(
        self,
        *,
        account_id: str,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...

    def list_audit_events(
        self,
        *,
        account_id: str,
        event_type: str | None = None,
        limit: int = 50,
        cursor: AuditCursor | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[AuditCursor]]: ...


def _page(
    records: list[AuditLogRecord],
    *,
    event_type: str | None,
    limit: int,
    cursor: AuditCursor | None,
) -> tuple[list[AuditLogRecord], Optional[AuditCursor]]:
    """Filter newest-first records and cut one page plus its continuation cursor."""
    limit = max(1, min(limit, 100))
    if event_type:
        records = [record for record in records if record.event_type == event_type]
    if cursor:
        records = [record for record in records if (record.created_at, record.audit_id) < cursor]
    page = records[:limit]
    next_cursor: AuditCursor | None = None
    if len(records) > limit:
        last = page[-1]
        next_cursor = (last.created_at, last.audit_id)
    return page, next_cursor


class InMemoryAccountStore:
    """Process-local store used by default and in tests."""

    def __init__(self) -> None:
        self._state: dict[tuple[str, str], str] = {}
        self._audit: list[AuditLogRecord] = []
        self._lock = Lock()

    def load(self, account_id: str, namespace: str) -> dict[str, Any] | None:
        with self._lock:
            raw = self._state.get((account_id, namespace))
        return json.loads(raw) if raw is not None else None

    def save(self, account_id: str, namespace: str, state: dict[str, Any]) -> None:
        with self._lock:
            self._state[(account_id, namespace)] = json.dumps(state)

    def namespaces(self, account_id: str) -> list[str]:
        with self._lock:
            return sorted(ns for acct, ns in self._state if acct == account_id)

    def write_audit_event(
        self,
        *,
        account_id: str,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            self._audit.append(
                AuditLogRecord(
                    audit_id=len(self._audit) + 1,
                    account_id=account_id,
                    event_type=event_type,
                    actor=actor,
                    metadata=dict(metadata or {}),
                    created_at=datetime.now(timezone.utc),
                )
            )

    def list_audit_events(
        self,
        *,
        account_id: str,
        event_type: str | None = None,
        limit: int = 50,
        cursor: AuditCursor | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[AuditCursor]]:
        with self._lock:
            records = [record for record in self._audit if record.account_id == account_id]
        records.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        return _page(records, event_type=event_type, limit=limit, cursor=cursor)


class RedisAccountStore:
    """Redis-backed store: one hash per account, one list per audit trail."""

    def __init__(self, client: Redis, *, key_prefix: str = "guard") -> None:
        self._client = client
        self._prefix = key_prefix

    def _state_key(self, account_id: str) -> str:
        return f"{self._prefix}:account:{account_id}"

    def _audit_key(self, account_id: str) -> str:
        return f"{self._prefix}:audit:{account_id}"

    def load(self, account_id: str, namespace: str) -> dict[str, Any] | None:
        raw = self._client.hget(self._state_key(account_id), namespace)
        return json.loads(raw) if raw is not None else None

    def save(self, account_id: str, namespace: str, state: dict[str, Any]) -> None:
        self._client.hset(self._state_key(account_id), namespace, json.dumps(state))

    def namespaces(self, account_id: str) -> list[str]:
        keys = self._client.hkeys(self._state_key(account_id))
        return sorted(key.decode("utf-8") if isinstance(key, bytes) else key for key in keys)

    def write_audit_event(
        self,
        *,
        account_id: str,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        audit_id = int(self._client.incr(f"{self._prefix}:audit:seq"))
        entry = {
            "audit_id": audit_id,
            "account_id": account_id,
            "event_type": event_type,
            "actor": actor,
            "metadata": metadata or {},
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self._client.lpush(self._audit_key(account_id), json.dumps(entry))

    def list_audit_events(
        self,
        *,
        account_id: str,
        event_type: str | None = None,
        limit: int = 50,
        cursor: AuditCursor | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[AuditCursor]]:
        records: list[AuditLogRecord] = []
        for raw in self._client.lrange(self._audit_key(account_id), 0, -1):
            data = json.loads(raw)
            data["created_at"] = datetime.fromisoformat(data["created_at"])
            records.append(AuditLogRecord(**data))
        records.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        return _page(records, event_type=event_type, limit=limit, cursor=cursor)


class PostgresAccountStore:
    """Postgres-backed store with a JSONB column per namespace slice."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS account_module_state (
            account_id TEXT NOT NULL,
            namespace TEXT NOT NULL,
            state JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (account_id, namespace)
        );
        CREATE TABLE IF NOT EXISTS account_audit_log (
            audit_id BIGSERIAL PRIMARY KEY,
            account_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            actor TEXT,
            metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def ensure_schema(self) -> None:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(self.SCHEMA)
                conn.commit()

    def load(self, account_id: str, namespace: str) -> dict[str, Any] | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT state
                    FROM account_module_state
                    WHERE account_id = %s AND namespace = %s
                    """,
                    (account_id, namespace),
                )
                row = cur.fetchone()
        if not row:
            return None
        return row[0]

    def save(self, account_id: str, namespace: str, state: dict[str, Any]) -> None:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO account_module_state (account_id, namespace, state, updated_at)
                    VALUES (%s, %s, %s, NOW())
                    ON CONFLICT (account_id, namespace)
                    DO UPDATE SET state = EXCLUDED.state, updated_at = NOW()
                    """,
                    (account_id, namespace, Json(state)),
                )
                conn.commit()

    def namespaces(self, account_id: str) -> list[str]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    "SELECT namespace FROM account_module_state WHERE account_id = %s ORDER BY namespace",
                    (account_id,),
                )
                return [row[0] for row in cur.fetchall()]

    def write_audit_event(
        self,
        *,
        account_id: str,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing account guard activity."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO account_audit_log (account_id, event_type, actor, metadata)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (account_id, event_type, actor, Json(metadata or {})),
                )
                conn.commit()

    def list_audit_events(
        self,
        *,
        account_id: str,
        event_type: str | None = None,
        limit: int = 50,
        cursor: AuditCursor | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[AuditCursor]]:
        """Return audit entries for an account, newest first, with cursor pagination."""
        limit = max(1, min(limit, 100))
        clauses = ["account_id = %s"]
        params: list[Any] = [account_id]

        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT audit_id, account_id, event_type, actor, metadata, created_at
            FROM account_audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit + 1)

        records: list[AuditLogRecord] = []
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                for row in cur.fetchall():
                    records.append(
                        AuditLogRecord(
                            audit_id=row[0],
                            account_id=row[1],
                            event_type=row[2],
                            actor=row[3],
                            metadata=row[4] or {},
                            created_at=row[5],
                        )
                    )

        next_cursor: AuditCursor | None = None
        if len(records) > limit:
            records = records[:limit]
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor
