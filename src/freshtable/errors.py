"""Structured error handling with context + cause + fix pattern.

Every freshtable error carries:
- Context: what operation was being attempted
- Cause: why it failed
- Fix: how to resolve it

Staleness-budget violations are not errors; they are surfaced as
``StalenessWarning`` so that a lagging table never stops a pipeline.
"""

from __future__ import annotations


class FreshtableError(Exception):
    """Base error with structured messaging."""

    def __init__(self, context: str, cause: str, fix: str) -> None:
        self.context = context
        self.cause = cause
        self.fix = fix
        message = f"{context}\n\nCause: {cause}\n\nFix: {fix}"
        super().__init__(message)

    def to_dict(self) -> dict:
        """Serialize error to structured dict for JSON output."""
        return {
            "error": True,
            "code": type(self).__name__,
            "context": self.context,
            "cause": self.cause,
            "fix": self.fix,
        }


class ConfigurationError(FreshtableError):
    """Configuration file or settings related errors."""

    pass


class ConfigNotFoundError(ConfigurationError):
    """Configuration file not found."""

    def __init__(self, path: str) -> None:
        super().__init__(
            context=f"Loading configuration from '{path}'",
            cause="Configuration file not found",
            fix=f"Create a freshtable.yaml file at '{path}' or run 'freshtable demo' to see a working project",
        )


class ConfigValidationError(ConfigurationError):
    """Configuration validation failed."""

    def __init__(self, path: str, details: str) -> None:
        super().__init__(
            context=f"Validating configuration from '{path}'",
            cause=details,
            fix="Check the configuration file matches the expected schema (name, default_env, environments).",
        )


class EnvironmentNotFoundError(ConfigurationError):
    """Requested environment not defined in configuration."""

    def __init__(self, env: str, available: list[str]) -> None:
        available_str = ", ".join(available) if available else "(none)"
        super().__init__(
            context=f"Resolving environment '{env}'",
            cause=f"Environment '{env}' is not defined in freshtable.yaml",
            fix=f"Use one of the available environments: {available_str}, or add '{env}' to the environments section",
        )


class DefinitionError(FreshtableError):
    """A raw or dynamic table is declared incorrectly."""

    pass


class DependencyError(FreshtableError):
    """A referenced relation is missing, cyclic, or incompatible."""

    pass


class TableNotFoundError(DependencyError):
    """A relation name does not resolve to a registered table."""

    def __init__(self, name: str, available: list[str]) -> None:
        available_str = ", ".join(sorted(available)) if available else "(none)"
        super().__init__(
            context=f"Resolving table '{name}'",
            cause=f"No raw or dynamic table named '{name}' is registered",
            fix=f"Use one of: {available_str}, or apply the definition first.",
        )


class RecordValidationError(FreshtableError):
    """One or more ingested records violate the raw table schema.

    ``issues`` holds ``(row_index, message)`` pairs for every offending row
    so callers can report all problems at once.
    """

    def __init__(self, table_name: str, issues: list[tuple[int, str]]) -> None:
        self.table_name = table_name
        self.issues = issues
        shown = "\n".join(f"  - row {idx}: {msg}" for idx, msg in issues[:20])
        more = f"\n  ... and {len(issues) - 20} more" if len(issues) > 20 else ""
        super().__init__(
            context=f"Ingesting records into '{table_name}'",
            cause=f"{len(issues)} invalid record(s):\n{shown}{more}",
            fix="Correct the listed records and resubmit the batch. No records from this batch were written.",
        )


class RefreshError(FreshtableError):
    """Recomputing a dynamic table failed.

    ``transient`` marks failures worth retrying (I/O, engine errors) as
    opposed to deterministic ones such as failed output checks.
    """

    def __init__(
        self, table_name: str, cause: str, *, transient: bool = True
    ) -> None:
        self.table_name = table_name
        self.transient = transient
        super().__init__(
            context=f"Refreshing dynamic table '{table_name}'",
            cause=cause,
            fix="The previous contents were kept. Fix the cause and run 'freshtable refresh' again.",
        )


class RegistryError(FreshtableError):
    """Registry operation errors."""

    pass


class StorageError(FreshtableError):
    """Storage operation errors."""

    pass


class QueryError(FreshtableError):
    """A SQL query over the current table contents failed."""

    def __init__(self, query: str, cause: str) -> None:
        self.query = query
        super().__init__(
            context=f"Running query: {' '.join(query.split())[:200]}",
            cause=cause,
            fix="Check the SQL syntax and that every table and column referenced exists.",
        )


class StalenessWarning(UserWarning):
    """A dynamic table is older than its target lag."""
