"""Diff engine comparing declared definitions with the registry.

A definition whose spec hash changed is an UPDATE; the refresh engine
notices the new definition hash and reinitializes the table.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import freshtable.discovery as discovery
import freshtable.registry as registry

if TYPE_CHECKING:
    import freshtable.backends.base as base
    import freshtable.core as core


class ChangeOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    UNCHANGED = "unchanged"


@dataclass
class Change:
    """A single change in the diff."""

    operation: ChangeOperation
    kind: str
    name: str
    old_hash: str | None = None
    new_hash: str | None = None
    spec_json: str | None = None


@dataclass
class DiffResult:
    changes: list[Change]

    def _of(self, operation: ChangeOperation) -> list[Change]:
        return [c for c in self.changes if c.operation == operation]

    @property
    def creates(self) -> list[Change]:
        return self._of(ChangeOperation.CREATE)

    @property
    def updates(self) -> list[Change]:
        return self._of(ChangeOperation.UPDATE)

    @property
    def deletes(self) -> list[Change]:
        return self._of(ChangeOperation.DELETE)

    @property
    def unchanged(self) -> list[Change]:
        return self._of(ChangeOperation.UNCHANGED)

    @property
    def has_changes(self) -> bool:
        """True if there are any creates, updates, or deletes."""
        return bool(self.creates or self.updates or self.deletes)

    def summary(self) -> str:
        """Return summary string like '3 created, 1 updated'."""
        parts = []
        if self.creates:
            parts.append(f"{len(self.creates)} created")
        if self.updates:
            parts.append(f"{len(self.updates)} updated")
        if self.deletes:
            parts.append(f"{len(self.deletes)} deleted")
        if self.unchanged:
            parts.append(f"{len(self.unchanged)} unchanged")
        return ", ".join(parts) if parts else "No changes"


def compute_diff(
    tables: list[core.RawTable | core.DynamicTable],
    reg: base.BaseRegistry,
) -> DiffResult:
    """Compute the changes needed to sync ``tables`` into ``reg``."""
    changes: list[Change] = []
    current = {(obj.kind, obj.name): obj for obj in reg.list_objects()}
    seen: set[tuple[str, str]] = set()

    for table in tables:
        key = (table.kind, table.name)
        seen.add(key)
        spec_json = discovery.spec_to_json(discovery.serialize_to_spec(table))
        new_hash = registry.compute_spec_hash(spec_json)
        existing = current.get(key)

        if existing is None:
            operation = ChangeOperation.CREATE
        elif existing.spec_hash != new_hash:
            operation = ChangeOperation.UPDATE
        else:
            operation = ChangeOperation.UNCHANGED

        changes.append(
            Change(
                operation=operation,
                kind=table.kind,
                name=table.name,
                old_hash=existing.spec_hash if existing else None,
                new_hash=new_hash,
                spec_json=spec_json,
            )
        )

    for key, obj in current.items():
        if key not in seen:
            changes.append(
                Change(
                    operation=ChangeOperation.DELETE,
                    kind=obj.kind,
                    name=obj.name,
                    old_hash=obj.spec_hash,
                )
            )

    changes.sort(key=lambda c: (c.kind, c.name))
    return DiffResult(changes=changes)
