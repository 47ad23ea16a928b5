"""Snapshot headers stored alongside materialized data.

Each raw or dynamic table is persisted as one Parquet file whose schema
metadata carries a ``TableSnapshot``. Because the header lives in the same
file as the rows, replacing the file swaps data and bookkeeping together:
a reader never sees rows from one refresh paired with the frontier of
another.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime

import pyarrow as pa

METADATA_KEY = b"freshtable.snapshot"


@dataclass(frozen=True)
class SourceFrontier:
    """Position in an upstream relation consumed by a refresh."""

    generation: int
    row_count: int
    data_version: int


@dataclass(frozen=True)
class TableSnapshot:
    """Bookkeeping for one materialized relation.

    ``data_version`` increases on every change. ``generation`` increases
    only on changes other than appends (rewrites, truncation, group
    replacement), which tells dependants whether the rows past their
    frontier are the complete delta.
    """

    table_name: str
    data_version: int = 0
    generation: int = 0
    row_count: int = 0
    spec_hash: str | None = None
    data_timestamp: datetime | None = None
    frontier: dict[str, SourceFrontier] = field(default_factory=dict)

    @property
    def position(self) -> SourceFrontier:
        """This relation's position, as recorded by its dependants."""
        return SourceFrontier(
            generation=self.generation,
            row_count=self.row_count,
            data_version=self.data_version,
        )

    def advance(self, **changes) -> TableSnapshot:
        return replace(self, **changes)

    def to_json(self) -> str:
        return json.dumps(
            {
                "table_name": self.table_name,
                "data_version": self.data_version,
                "generation": self.generation,
                "row_count": self.row_count,
                "spec_hash": self.spec_hash,
                "data_timestamp": (
                    self.data_timestamp.isoformat() if self.data_timestamp else None
                ),
                "frontier": {
                    name: {
                        "generation": f.generation,
                        "row_count": f.row_count,
                        "data_version": f.data_version,
                    }
                    for name, f in self.frontier.items()
                },
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, payload: str) -> TableSnapshot:
        raw = json.loads(payload)
        ts = raw.get("data_timestamp")
        return cls(
            table_name=raw["table_name"],
            data_version=raw["data_version"],
            generation=raw["generation"],
            row_count=raw["row_count"],
            spec_hash=raw.get("spec_hash"),
            data_timestamp=datetime.fromisoformat(ts) if ts else None,
            frontier={
                name: SourceFrontier(**values)
                for name, values in raw.get("frontier", {}).items()
            },
        )

    def attach(self, data: pa.Table) -> pa.Table:
        """Return ``data`` with this header stored in its schema metadata."""
        metadata = dict(data.schema.metadata or {})
        metadata[METADATA_KEY] = self.to_json().encode()
        return data.replace_schema_metadata(metadata)

    @classmethod
    def from_arrow(cls, data: pa.Table | pa.Schema) -> TableSnapshot | None:
        schema = data if isinstance(data, pa.Schema) else data.schema
        payload = (schema.metadata or {}).get(METADATA_KEY)
        if payload is None:
            return None
        return cls.from_json(payload.decode())


def strip_header(data: pa.Table) -> pa.Table:
    """Drop freshtable metadata so rows can be handed to users or ibis."""
    metadata = {
        k: v for k, v in (data.schema.metadata or {}).items() if k != METADATA_KEY
    }
    return data.replace_schema_metadata(metadata or None)
