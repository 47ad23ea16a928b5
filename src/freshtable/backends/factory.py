"""Infrastructure kinds selectable per environment.

- BackendKind: snapshot storage and compute (DuckDB)
- RegistryKind: definition, refresh history and status registry (SQLite)
"""

import freshtable.backends.duckdb as duckdb
import freshtable.backends.sqlite as sqlite

RegistryKind = sqlite.SqliteRegistry
BackendKind = duckdb.DuckDBBackend
