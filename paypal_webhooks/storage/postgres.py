"""PostgreSQL storage adapter (psycopg 3, async).

One short-lived autocommit connection per operation, rows as dicts.
Driver exceptions never escape: each one is classified into a
StorageErrorKind and returned inside a StorageResult.

Security contract:
- Table, column and function names are composed with psycopg.sql
  identifiers; values are always bound parameters.
- Error messages are logged, never returned to webhook callers.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import psycopg
from psycopg import errors as pg_errors
from psycopg import sql
from psycopg.rows import dict_row

from paypal_webhooks.storage.protocol import StorageErrorKind, StorageResult

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


def classify(exc: Exception) -> StorageErrorKind:
    """Map a psycopg exception to a StorageErrorKind."""
    if isinstance(exc, pg_errors.UniqueViolation):
        return StorageErrorKind.CONSTRAINT_VIOLATION
    if isinstance(exc, (pg_errors.UndefinedTable, pg_errors.UndefinedFunction)):
        return StorageErrorKind.MISSING_RELATION
    if isinstance(exc, (psycopg.OperationalError, TimeoutError, OSError)):
        return StorageErrorKind.TRANSIENT
    return StorageErrorKind.UNKNOWN


def _failure(exc: Exception) -> StorageResult:
    return StorageResult.failure(
        classify(exc),
        str(exc).strip().splitlines()[0] if str(exc).strip() else type(exc).__name__,
        getattr(exc, "sqlstate", None),
    )


def _where(match: dict[str, Any]) -> tuple[sql.Composable, list[Any]]:
    if not match:
        return sql.SQL("TRUE"), []
    parts = [sql.SQL("{} = {}").format(sql.Identifier(k), sql.Placeholder()) for k in match]
    return sql.SQL(" AND ").join(parts), list(match.values())


class PostgresStorage:
    """StorageClient backed by PostgreSQL."""

    def __init__(self, dsn: str, connect_timeout: int = 5) -> None:
        self._dsn = dsn
        self._connect_timeout = connect_timeout

    async def _connect(self) -> psycopg.AsyncConnection:
        return await psycopg.AsyncConnection.connect(
            self._dsn,
            autocommit=True,
            row_factory=dict_row,
            connect_timeout=self._connect_timeout,
        )

    async def _execute(self, query: sql.Composable, params: list[Any], fetch: str) -> StorageResult:
        try:
            async with await self._connect() as conn:
                cur = await conn.execute(query, params)
                if fetch == "one":
                    return StorageResult(data=await cur.fetchone())
                if fetch == "all":
                    return StorageResult(data=await cur.fetchall())
                return StorageResult(data=cur.rowcount)
        except (psycopg.Error, OSError, TimeoutError) as e:
            result = _failure(e)
            logger.debug("Storage operation failed: %s", result.error)
            return result

    async def init_schema(self) -> None:
        """Apply schema.sql. Idempotent."""
        async with await self._connect() as conn:
            await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        logger.info("Webhook pipeline tables initialized")

    # ── StorageClient ──────────────────────────────────────────────────────

    async def insert(self, table: str, row: dict[str, Any]) -> StorageResult:
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in row),
            sql.SQL(", ").join(sql.Placeholder() for _ in row),
        )
        return await self._execute(query, list(row.values()), "one")

    async def update(
        self, table: str, values: dict[str, Any], match: dict[str, Any]
    ) -> StorageResult:
        where, where_params = _where(match)
        query = sql.SQL("UPDATE {} SET {} WHERE {}").format(
            sql.Identifier(table),
            sql.SQL(", ").join(
                sql.SQL("{} = {}").format(sql.Identifier(c), sql.Placeholder()) for c in values
            ),
            where,
        )
        return await self._execute(query, list(values.values()) + where_params, "count")

    async def select_one(
        self, table: str, match: dict[str, Any], columns: list[str] | None = None
    ) -> StorageResult:
        where, params = _where(match)
        cols = sql.SQL(", ").join(sql.Identifier(c) for c in columns) if columns else sql.SQL("*")
        query = sql.SQL("SELECT {} FROM {} WHERE {} ORDER BY 1 LIMIT 1").format(
            cols, sql.Identifier(table), where
        )
        return await self._execute(query, params, "one")

    async def select(
        self, table: str, match: dict[str, Any], limit: int | None = None
    ) -> StorageResult:
        where, params = _where(match)
        query = sql.SQL("SELECT * FROM {} WHERE {} ORDER BY created_at").format(
            sql.Identifier(table), where
        )
        if limit is not None:
            query = query + sql.SQL(" LIMIT {}").format(sql.Literal(int(limit)))
        return await self._execute(query, params, "all")

    async def delete(self, table: str, match: dict[str, Any]) -> StorageResult:
        where, params = _where(match)
        query = sql.SQL("DELETE FROM {} WHERE {}").format(sql.Identifier(table), where)
        return await self._execute(query, params, "count")

    async def rpc(self, function: str, params: dict[str, Any]) -> StorageResult:
        query = sql.SQL("SELECT {}({}) AS result").format(
            sql.Identifier(function),
            sql.SQL(", ").join(
                sql.SQL("{} => {}").format(sql.Identifier(k), sql.Placeholder()) for k in params
            ),
        )
        result = await self._execute(query, list(params.values()), "one")
        if result.ok and result.data is not None:
            return StorageResult(data=result.data.get("result"))
        return result
