from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from lockgate.logging import get_logger
from lockgate.storage.errors import SchemaMissingError
from lockgate.storage.models import TouchResult, UserCredential
from lockgate.storage.reconciler import (
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    ExpirationReconciler,
)

Clock = Callable[[], datetime]

REQUIRED_TABLES = ("sessions", "users")

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        session_id TEXT PRIMARY KEY,
        content TEXT NOT NULL,
        expires TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS sessions_expires_idx ON sessions (expires)",
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id TEXT PRIMARY KEY,
        access_token TEXT NOT NULL,
        refresh_token TEXT
    )
    """,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PostgresStore:
    """Session and credential persistence on a shared connection pool.

    Every operation borrows one pooled connection for a single statement. The
    pool context commits on success and rolls back on error; the connection is
    returned on both paths.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 30.0,
        clock: Clock | None = None,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        auto_migrate: bool = False,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.clock: Clock = clock or _utcnow
        self.auto_migrate = auto_migrate
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )
        self.reconciler = ExpirationReconciler(self, interval=sweep_interval)

    def _connect(self):
        return self.pool.connection()

    async def open(self) -> None:
        await self.pool.open()
        if self.auto_migrate:
            await self.ensure_schema()
        await self._verify_required_schema()
        self.logger.info("postgres_store_opened", auto_migrate=self.auto_migrate)

    async def close(self) -> None:
        await self.reconciler.stop()
        await self.pool.close()

    async def ensure_schema(self) -> None:
        """Create the ``sessions`` and ``users`` tables if they are missing."""

        async with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)
        self.logger.info("postgres_schema_ensured")

    async def _verify_required_schema(self) -> None:
        missing_tables = []
        async with self._connect() as conn:
            for table in REQUIRED_TABLES:
                cur = await conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                )
                row = await cur.fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise SchemaMissingError(
                "Missing required Postgres tables: {}. Run scripts/init_db.py or set DB_AUTO_MIGRATE=true.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    async def ping(self) -> bool:
        try:
            async with self._connect() as conn:
                await conn.execute("SELECT 1")
        except psycopg.Error as exc:
            self.logger.warning("postgres_ping_failed", error=str(exc))
            return False
        return True

    # sessions
    async def load_session(self, session_id: str) -> Optional[str]:
        self.reconciler.arm()
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT content FROM sessions WHERE session_id = %s AND expires >= %s",
                (session_id, self.clock()),
            )
            row = await cur.fetchone()
        if not row:
            return None
        return row["content"]

    async def save_session(
        self, session_id: str, content: str, expires_at: datetime
    ) -> None:
        self.reconciler.arm()
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO sessions (session_id, content, expires)
                VALUES (%s, %s, %s)
                ON CONFLICT (session_id) DO UPDATE
                SET content = EXCLUDED.content, expires = EXCLUDED.expires
                """,
                (session_id, content, expires_at),
            )

    async def touch_session(self, session_id: str, expires_at: datetime) -> TouchResult:
        """Extend a record's expiry without rewriting its payload.

        Best effort: a storage failure is logged and reported as
        ``TouchResult.FAILED`` rather than raised. A missing record is left
        missing.
        """
        self.reconciler.arm()
        try:
            async with self._connect() as conn:
                cur = await conn.execute(
                    "UPDATE sessions SET expires = %s WHERE session_id = %s",
                    (expires_at, session_id),
                )
                updated = cur.rowcount
        except psycopg.Error as exc:
            self.logger.warning(
                "session_touch_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return TouchResult.FAILED
        return TouchResult.EXTENDED if updated else TouchResult.MISSING

    async def destroy_session(self, session_id: str) -> None:
        self.reconciler.arm()
        async with self._connect() as conn:
            await conn.execute(
                "DELETE FROM sessions WHERE session_id = %s", (session_id,)
            )

    async def delete_expired_sessions(self) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM sessions WHERE expires < %s", (self.clock(),)
            )
            return cur.rowcount

    # credentials
    async def upsert_user_credential(
        self, user_id: str, access_token: str, refresh_token: Optional[str]
    ) -> None:
        self.reconciler.arm()
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO users (user_id, access_token, refresh_token)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET access_token = EXCLUDED.access_token, refresh_token = EXCLUDED.refresh_token
                """,
                (user_id, access_token, refresh_token),
            )

    async def get_user_credential(self, user_id: str) -> Optional[UserCredential]:
        self.reconciler.arm()
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT user_id, access_token, refresh_token FROM users WHERE user_id = %s",
                (user_id,),
            )
            row = await cur.fetchone()
        if not row:
            return None
        return UserCredential(
            user_id=str(row["user_id"]),
            access_token=row["access_token"],
            refresh_token=row.get("refresh_token"),
        )
