"""Storage client protocol shared by every pipeline component.

Each operation returns a StorageResult (data, error) instead of raising, so
callers and the RetryExecutor can inspect the error kind and decide what to
do. Adapters translate their driver's exceptions into StorageErrorKind;
nothing above this layer compares raw error strings or SQLSTATE codes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

# SQLSTATE codes the adapters map to the closed kinds below
UNIQUE_VIOLATION = "23505"
UNDEFINED_TABLE = "42P01"
UNDEFINED_FUNCTION = "42883"


class StorageErrorKind(str, Enum):
    """Closed classification of storage failures."""
    CONSTRAINT_VIOLATION = "constraint_violation"
    MISSING_RELATION = "missing_relation"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class StorageError:
    """A classified storage failure."""
    kind: StorageErrorKind
    message: str = ""
    code: str | None = None  # SQLSTATE when the driver reports one

    def __str__(self) -> str:
        if self.code:
            return f"{self.kind.value} ({self.code}): {self.message}"
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class StorageResult:
    """Outcome of one storage operation."""
    data: Any = None
    error: StorageError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, kind: StorageErrorKind, message: str = "", code: str | None = None) -> StorageResult:
        return cls(error=StorageError(kind=kind, message=message, code=code))


@runtime_checkable
class StorageClient(Protocol):
    """Async insert/update/select capability over named tables.

    `match` arguments are equality filters joined with AND.
    """

    async def insert(self, table: str, row: dict[str, Any]) -> StorageResult:
        """Insert one row. Data is the inserted row."""
        ...

    async def update(
        self, table: str, values: dict[str, Any], match: dict[str, Any]
    ) -> StorageResult:
        """Update matching rows. Data is the number of rows updated."""
        ...

    async def select_one(
        self, table: str, match: dict[str, Any], columns: list[str] | None = None
    ) -> StorageResult:
        """Fetch the first matching row, or None."""
        ...

    async def select(
        self, table: str, match: dict[str, Any], limit: int | None = None
    ) -> StorageResult:
        """Fetch all matching rows as a list."""
        ...

    async def delete(self, table: str, match: dict[str, Any]) -> StorageResult:
        """Delete matching rows. Data is the number of rows deleted."""
        ...

    async def rpc(self, function: str, params: dict[str, Any]) -> StorageResult:
        """Call a server-side function with named parameters."""
        ...
