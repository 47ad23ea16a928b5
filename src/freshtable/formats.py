"""Format classes for reading and writing materialized data.

Backends delegate file I/O to a format instance rather than implementing
read/write directly.
"""

from __future__ import annotations

import abc
import uuid
from pathlib import Path
from typing import Literal

from typing_extensions import override

import pyarrow as pa
import pyarrow.parquet as pq
import pydantic as pdt


class BaseFormat(abc.ABC, pdt.BaseModel, frozen=True, strict=True, extra="forbid"):
    """Abstract base for data formats.

    Backends pass resolved paths; formats handle serialization.
    """

    kind: str

    @abc.abstractmethod
    def read(self, path: Path) -> pa.Table:
        """Read the whole table stored at ``path``."""
        ...

    @abc.abstractmethod
    def read_schema(self, path: Path) -> pa.Schema:
        """Read only the schema (and its metadata) stored at ``path``."""
        ...

    @abc.abstractmethod
    def write(self, path: Path, data: pa.Table) -> None:
        """Replace the table stored at ``path`` with ``data``.

        Implementations must make the replacement atomic: concurrent
        readers see either the old or the new contents, never a mix.
        """
        ...


class ParquetFormat(BaseFormat):
    """Single-file Parquet storage with atomic replacement.

    Writes go to a uniquely named sibling file which is then renamed over
    the target, so a reader opening the path always gets a complete file.
    """

    kind: Literal["parquet"] = "parquet"

    compression: Literal["snappy", "gzip", "zstd", "none"] = "snappy"

    @override
    def read(self, path: Path) -> pa.Table:
        # One open handle, so a concurrent replace cannot mix two files.
        with pq.ParquetFile(str(path)) as parquet_file:
            return parquet_file.read()

    @override
    def read_schema(self, path: Path) -> pa.Schema:
        return pq.read_schema(str(path))

    @override
    def write(self, path: Path, data: pa.Table) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            pq.write_table(
                data,
                str(tmp_path),
                compression=self.compression if self.compression != "none" else None,
            )
            tmp_path.replace(path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()


FormatKind = ParquetFormat
