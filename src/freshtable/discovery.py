"""Discovery and serialization of table definitions.

Definitions are plain Python modules declaring RawTable and DynamicTable
objects. Discovery imports the configured files and collects those objects;
serialization turns them into canonical JSON specs for the registry.
"""

from __future__ import annotations

import importlib.util
import json
import sys
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

import freshtable.compiler as compiler_mod
import freshtable.core as core
import freshtable.registry as registry

if TYPE_CHECKING:
    import freshtable.settings as settings


@dataclass
class DiscoveredObject:
    """A discovered table definition."""

    kind: str  # "raw_table", "dynamic_table"
    name: str
    obj: core.RawTable | core.DynamicTable
    source_file: str


class DefinitionDiscoverer:
    """Imports definition files and extracts freshtable objects.

    Usage:
        discoverer = DefinitionDiscoverer(freshtable_settings)
        objects = discoverer.discover_all()
    """

    def __init__(
        self,
        freshtable_settings: settings.FreshtableSettings | None = None,
        project_root: Path | None = None,
    ):
        self._settings = freshtable_settings

        if project_root is None and freshtable_settings is not None:
            project_root = (
                Path(freshtable_settings._config_path).parent
                if freshtable_settings._config_path
                else Path.cwd()
            )
        elif project_root is None:
            project_root = Path.cwd()

        self._project_root = project_root

    def discover_all(self) -> list[DiscoveredObject]:
        """Discover every table declared in the configured definition paths."""
        if self._settings is None:
            return []

        discovered: list[DiscoveredObject] = []
        seen: set[int] = set()
        for rel_path in self._settings.definitions:
            path = self._project_root / rel_path
            if path.is_dir():
                files = sorted(p for p in path.rglob("*.py") if not p.name.startswith("_"))
            elif path.is_file():
                files = [path]
            else:
                continue
            for py_file in files:
                for obj in self._extract_from_module(py_file):
                    if id(obj.obj) not in seen:
                        seen.add(id(obj.obj))
                        discovered.append(obj)
        return discovered

    def _extract_from_module(self, py_file: Path) -> list[DiscoveredObject]:
        """Import a Python file and extract table objects."""
        module_name = f"_freshtable_discovery_{py_file.stem}_{id(py_file)}"

        spec = importlib.util.spec_from_file_location(module_name, py_file)
        if spec is None or spec.loader is None:
            return []

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module

        discovered: list[DiscoveredObject] = []
        try:
            spec.loader.exec_module(module)

            for name in dir(module):
                if name.startswith("_"):
                    continue
                obj = getattr(module, name)
                if isinstance(obj, (core.RawTable, core.DynamicTable)):
                    discovered.append(
                        DiscoveredObject(
                            kind=obj.kind,
                            name=obj.name,
                            obj=obj,
                            source_file=str(py_file),
                        )
                    )
        finally:
            del sys.modules[module_name]

        return discovered


def discover_definitions(
    freshtable_settings: settings.FreshtableSettings | None = None,
    project_root: Path | None = None,
) -> list[DiscoveredObject]:
    """Convenience wrapper around DefinitionDiscoverer.discover_all()."""
    return DefinitionDiscoverer(freshtable_settings, project_root).discover_all()


# =============================================================================
# Serialization
# =============================================================================


def serialize_to_spec(obj: core.RawTable | core.DynamicTable) -> dict[str, Any]:
    """Convert a table definition to a canonical spec dictionary.

    References to other tables use names. Callables are captured through
    the SQL the compiler renders for them.
    """
    if isinstance(obj, core.RawTable):
        return _serialize_raw_table(obj)
    return _serialize_dynamic_table(obj)


def spec_to_json(spec: dict[str, Any]) -> str:
    """Sorted keys, no extra whitespace, deterministic output."""
    return json.dumps(spec, sort_keys=True, separators=(",", ":"), default=str)


def spec_hash(obj: core.RawTable | core.DynamicTable) -> str:
    return registry.compute_spec_hash(spec_to_json(serialize_to_spec(obj)))


def definition_hash(table: core.DynamicTable) -> str:
    """Hash of what determines a dynamic table's contents.

    Narrower than ``spec_hash``: changing the lag, description or owner
    does not force a reinitialization, changing the query does.
    """
    compiled = compiler_mod.ViewCompiler().compile_table(table)
    payload = {"source": table.source_name, "sql": compiled.sql}
    return registry.compute_spec_hash(spec_to_json(payload))


def lag_to_spec(lag: timedelta | str) -> int | str:
    return lag if isinstance(lag, str) else int(lag.total_seconds())


def _serialize_raw_table(table: core.RawTable) -> dict[str, Any]:
    return {
        "name": table.name,
        "description": table.description,
        "primary_key": table.primary_key,
        "timestamp_field": table.timestamp_field,
        "owner": table.owner,
        "tags": table.tags,
        "schema": {
            name: _serialize_field(field) for name, field in table.schema_.fields()
        },
    }


def _serialize_dynamic_table(table: core.DynamicTable) -> dict[str, Any]:
    compiled = compiler_mod.ViewCompiler().compile_table(table)
    spec: dict[str, Any] = {
        "name": table.name,
        "description": table.description,
        "source": {"type": table.source.kind, "name": table.source_name},
        "target_lag": lag_to_spec(table.target_lag),
        "refresh_mode": table.refresh_mode,
        "owner": table.owner,
        "tags": table.tags,
        "columns": table.columns,
        "group_by": table.group_by,
        "sql": compiled.sql,
    }
    if table._aggregates:
        spec["aggregates"] = [
            {
                "name": agg["name"],
                "column": agg["column"],
                "function": agg["function"],
                "conditional": agg["where"] is not None,
            }
            for agg in table._aggregates
        ]
    if table.checks:
        spec["checks"] = {
            name: _serialize_field(field) for name, field in table.checks.items()
        }
    return spec


def _serialize_field(field: core.Field) -> dict[str, Any]:
    return {
        "dtype": field.dtype,
        "description": field.description,
        "gt": field.gt,
        "ge": field.ge,
        "lt": field.lt,
        "le": field.le,
        "not_null": field.not_null,
        "allowed_values": field.allowed_values,
        "unique": field.unique,
        "severity": field.severity,
    }
