"""In-memory storage adapter.

Used for local development (no DATABASE_URL) and by the test suite. It
enforces the same unique keys as the PostgreSQL schema and implements the
activate_subscription function, so the pipeline behaves the same against
either adapter.

Failures can be injected per (operation, table) to exercise retry and
dead-letter paths.
"""

from __future__ import annotations

import copy
import itertools
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

from paypal_webhooks.storage.protocol import (
    UNDEFINED_FUNCTION,
    UNDEFINED_TABLE,
    UNIQUE_VIOLATION,
    StorageError,
    StorageErrorKind,
    StorageResult,
)

# table -> unique key columns (mirrors schema.sql)
UNIQUE_KEYS: dict[str, tuple[str, ...]] = {
    "webhook_events": ("event_id",),
    "subscriptions": ("paypal_subscription_id",),
    "profiles": ("id",),
}

KNOWN_TABLES = {
    "webhook_events",
    "subscriptions",
    "profiles",
    "subscription_audit",
    "payments",
    "payment_failures",
    "notifications",
    "webhook_dead_letters",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _matches(row: dict[str, Any], match: dict[str, Any]) -> bool:
    return all(row.get(k) == v for k, v in match.items())


class InMemoryStorage:
    """Dict-backed StorageClient."""

    def __init__(self, tables: set[str] | None = None) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {
            name: [] for name in (KNOWN_TABLES if tables is None else tables)
        }
        self.calls: dict[tuple[str, str], int] = defaultdict(int)
        self._failures: dict[tuple[str, str], list[StorageError]] = defaultdict(list)
        self._ids = itertools.count(1)

    # ── Test hooks ─────────────────────────────────────────────────────────

    def fail_next(
        self,
        operation: str,
        table: str,
        kind: StorageErrorKind = StorageErrorKind.TRANSIENT,
        times: int = 1,
        message: str = "injected failure",
        code: str | None = None,
    ) -> None:
        """Make the next `times` calls of operation on table fail."""
        error = StorageError(kind=kind, message=message, code=code)
        self._failures[(operation, table)].extend([error] * times)

    def rows(self, table: str) -> list[dict[str, Any]]:
        """Snapshot of a table's rows."""
        return copy.deepcopy(self.tables.get(table, []))

    # ── Internals ──────────────────────────────────────────────────────────

    def _enter(self, operation: str, table: str) -> StorageResult | None:
        self.calls[(operation, table)] += 1
        pending = self._failures.get((operation, table))
        if pending:
            return StorageResult(error=pending.pop(0))
        if operation != "rpc" and table not in self.tables:
            return StorageResult.failure(
                StorageErrorKind.MISSING_RELATION,
                f'relation "{table}" does not exist',
                UNDEFINED_TABLE,
            )
        return None

    def _conflicts(self, table: str, row: dict[str, Any]) -> bool:
        key = UNIQUE_KEYS.get(table)
        if not key or any(row.get(col) is None for col in key):
            return False
        for existing in self.tables[table]:
            if all(existing.get(col) == row.get(col) for col in key):
                return True
        return False

    # ── StorageClient ──────────────────────────────────────────────────────

    async def insert(self, table: str, row: dict[str, Any]) -> StorageResult:
        failed = self._enter("insert", table)
        if failed:
            return failed
        if self._conflicts(table, row):
            return StorageResult.failure(
                StorageErrorKind.CONSTRAINT_VIOLATION,
                f"duplicate key value violates unique constraint on {table}",
                UNIQUE_VIOLATION,
            )
        stored = {"id": next(self._ids), "created_at": _now(), **copy.deepcopy(row)}
        self.tables[table].append(stored)
        return StorageResult(data=copy.deepcopy(stored))

    async def update(
        self, table: str, values: dict[str, Any], match: dict[str, Any]
    ) -> StorageResult:
        failed = self._enter("update", table)
        if failed:
            return failed
        count = 0
        for row in self.tables[table]:
            if _matches(row, match):
                row.update(copy.deepcopy(values))
                count += 1
        return StorageResult(data=count)

    async def select_one(
        self, table: str, match: dict[str, Any], columns: list[str] | None = None
    ) -> StorageResult:
        failed = self._enter("select", table)
        if failed:
            return failed
        for row in self.tables[table]:
            if _matches(row, match):
                found = copy.deepcopy(row)
                if columns:
                    found = {c: found.get(c) for c in columns}
                return StorageResult(data=found)
        return StorageResult(data=None)

    async def select(
        self, table: str, match: dict[str, Any], limit: int | None = None
    ) -> StorageResult:
        failed = self._enter("select", table)
        if failed:
            return failed
        found = [copy.deepcopy(r) for r in self.tables[table] if _matches(r, match)]
        return StorageResult(data=found[:limit] if limit is not None else found)

    async def delete(self, table: str, match: dict[str, Any]) -> StorageResult:
        failed = self._enter("delete", table)
        if failed:
            return failed
        before = len(self.tables[table])
        self.tables[table] = [r for r in self.tables[table] if not _matches(r, match)]
        return StorageResult(data=before - len(self.tables[table]))

    async def rpc(self, function: str, params: dict[str, Any]) -> StorageResult:
        failed = self._enter("rpc", function)
        if failed:
            return failed
        if function != "activate_subscription":
            return StorageResult.failure(
                StorageErrorKind.MISSING_RELATION,
                f"function {function} does not exist",
                UNDEFINED_FUNCTION,
            )
        return StorageResult(data=self._activate_subscription(**params))

    def _activate_subscription(
        self,
        p_user_id: str,
        p_subscription_id: str,
        p_plan_type: str,
        p_current_period_end: str | None = None,
        p_event_type: str = "BILLING.SUBSCRIPTION.ACTIVATED",
    ) -> dict[str, Any]:
        """Same semantics as activate_subscription() in schema.sql."""
        now = _now()
        subs = self.tables["subscriptions"]
        existing = next(
            (r for r in subs if r.get("paypal_subscription_id") == p_subscription_id), None
        )
        old_status = existing.get("status") if existing else None
        old_tier = existing.get("plan_type") if existing else None
        if existing is None:
            existing = {
                "id": next(self._ids),
                "paypal_subscription_id": p_subscription_id,
                "started_at": now,
                "created_at": now,
            }
            subs.append(existing)
        existing.update(
            {
                "user_id": p_user_id,
                "status": "active",
                "plan_type": p_plan_type,
                "current_period_end": p_current_period_end,
                "grace_period_end": None,
                "updated_at": now,
            }
        )

        profile = next((r for r in self.tables["profiles"] if r.get("id") == p_user_id), None)
        if profile is None:
            self.tables["profiles"].append({"id": p_user_id, "subscription_tier": p_plan_type})
        else:
            profile["subscription_tier"] = p_plan_type

        self.tables["subscription_audit"].append(
            {
                "id": next(self._ids),
                "user_id": p_user_id,
                "paypal_subscription_id": p_subscription_id,
                "old_status": old_status,
                "new_status": "active",
                "old_tier": old_tier,
                "new_tier": p_plan_type,
                "event_type": p_event_type,
                "created_at": now,
            }
        )
        return {"paypal_subscription_id": p_subscription_id, "status": "active"}
