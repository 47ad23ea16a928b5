"""Registry data types for definitions, refresh history and table status.

These are the records registry implementations persist: versioned table
definitions with a changelog, one history row per refresh attempt, and the
scheduling status of each dynamic table.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class ObjectRecord:
    """A registered raw or dynamic table definition.

    Objects are stored with content-based versioning via spec_hash.
    The version field is monotonically incremented on each update.
    """

    kind: str  # "raw_table", "dynamic_table"
    name: str  # unique within kind
    spec_hash: str  # SHA256 of canonical JSON spec
    spec_json: str
    version: int


@dataclass(frozen=True)
class ChangelogEntry:
    """Record of a registry mutation."""

    id: int
    timestamp: datetime
    operation: str  # "create", "update", "delete"
    kind: str
    name: str
    old_hash: str | None  # None for create
    new_hash: str | None  # None for delete
    applied_by: str  # user@hostname


@dataclass(frozen=True)
class RefreshRecord:
    """One refresh attempt of a dynamic table.

    ``state`` is SUCCEEDED, FAILED or SKIPPED; ``refresh_action`` is
    NO_DATA, REINITIALIZE, FULL or INCREMENTAL (None when nothing ran);
    ``refresh_trigger`` is MANUAL, SCHEDULED or CREATION.
    """

    id: int | None  # Auto-assigned by DB
    table_name: str
    state: str
    refresh_action: str | None
    refresh_trigger: str
    refresh_start_time: datetime
    refresh_end_time: datetime
    data_timestamp: datetime | None = None
    row_count: int | None = None
    rows_changed: int | None = None
    attempts: int = 1
    error: str | None = None

    @property
    def duration_ms(self) -> float:
        return (
            self.refresh_end_time - self.refresh_start_time
        ).total_seconds() * 1000


@dataclass(frozen=True)
class TableStatus:
    """Scheduling status of a dynamic table."""

    table_name: str
    scheduling_state: str  # "ACTIVE", "SUSPENDED"
    consecutive_failures: int
    updated_at: datetime


def compute_spec_hash(spec_json: str) -> str:
    """Compute SHA256 hash of canonical JSON spec."""
    return hashlib.sha256(spec_json.encode()).hexdigest()
