from __future__ import annotations

import re
from datetime import timedelta
from typing import Any, Callable, Literal

import pyarrow as pa
import pydantic as pdt

import freshtable.errors as errors
import freshtable.types as types

DType = types.DType
AggFunction = Literal["sum", "count", "avg", "min", "max", "count_distinct"]
RefreshMode = Literal["auto", "full"]
TargetLag = timedelta | Literal["downstream"]

_LAG_PATTERN = re.compile(
    r"^\s*(\d+)\s*(second|minute|hour|day)s?\s*$", re.IGNORECASE
)


def parse_target_lag(value: Any) -> Any:
    """Parse '1 minute' / '5 minutes' / 'DOWNSTREAM' style lag strings.

    Non-string values pass through untouched for pydantic to validate.
    """
    if not isinstance(value, str):
        return value
    if value.strip().lower() == "downstream":
        return "downstream"
    match = _LAG_PATTERN.match(value)
    if match is None:
        raise ValueError(
            f"Invalid target lag '{value}': expected '<n> seconds|minutes|hours|days' or 'downstream'"
        )
    amount, unit = int(match.group(1)), match.group(2).lower()
    return timedelta(**{f"{unit}s": amount})


class FreshBaseModel(pdt.BaseModel):
    model_config = pdt.ConfigDict(
        arbitrary_types_allowed=True,
    )


class Field(FreshBaseModel):
    """Column declaration with the constraints enforced on it.

    Used both for raw table schemas (checked per record on ingestion) and
    for dynamic table output checks (checked per column before a refresh
    is written).
    """

    dtype: types.DType
    description: str | None = None

    # Range constraints
    gt: float | None = None
    ge: float | None = None
    lt: float | None = None
    le: float | None = None

    not_null: bool = False
    allowed_values: list | None = None
    unique: bool = False

    severity: Literal["warn", "error"] = "error"


class Schema:
    """Schema definition using Field for column specifications.

    Users subclass Schema and define fields as class attributes. Column
    order follows declaration order.

    Example:
        class PaymentSchema(Schema):
            payment_id = Field(dtype="int64", not_null=True, unique=True)
            amount = Field(dtype="float64", ge=0)
    """

    @classmethod
    def fields(cls) -> list[tuple[str, Field]]:
        """Return all Field definitions as (name, field) tuples."""
        result: dict[str, Field] = {}
        for klass in reversed(cls.__mro__):
            for name, value in vars(klass).items():
                if not name.startswith("_") and isinstance(value, Field):
                    result[name] = value
        return list(result.items())

    @classmethod
    def field_names(cls) -> list[str]:
        """Return names of all fields in schema."""
        return [name for name, _ in cls.fields()]

    @classmethod
    def arrow_schema(cls) -> pa.Schema:
        return pa.schema(
            [
                pa.field(name, types.ARROW_TYPES[f.dtype], nullable=not f.not_null)
                for name, f in cls.fields()
            ]
        )


class RawTable(FreshBaseModel):
    """Append-only ingestion table.

    Records are validated against ``schema`` on insert. ``primary_key``
    names a column whose values must be unique across the whole store.

    Example:
        transactions_raw = RawTable(
            name="transactions_raw",
            schema=TransactionSchema,
            primary_key="transaction_id",
            timestamp_field="transaction_ts",
        )
    """

    name: str
    description: str | None = None
    schema_: type[Schema] = pdt.Field(alias="schema")
    primary_key: str | None = None
    timestamp_field: str | None = None
    owner: str | None = None
    tags: dict[str, str] | None = None

    @pdt.model_validator(mode="after")
    def validate_columns(self) -> "RawTable":
        names = self.schema_.field_names()
        if not names:
            raise errors.DefinitionError(
                context=f"Validating RawTable '{self.name}'",
                cause="Schema declares no fields",
                fix="Declare at least one Field on the schema class.",
            )
        for label, column in (
            ("primary_key", self.primary_key),
            ("timestamp_field", self.timestamp_field),
        ):
            if column is not None and column not in names:
                raise errors.DefinitionError(
                    context=f"Validating RawTable '{self.name}'",
                    cause=f"{label} '{column}' is not a schema field",
                    fix=f"Use one of: {', '.join(names)}.",
                )
        return self

    @property
    def kind(self) -> str:
        return "raw_table"

    @property
    def upstream_names(self) -> list[str]:
        return []

    def arrow_schema(self) -> pa.Schema:
        return self.schema_.arrow_schema()


class DynamicTable(FreshBaseModel):
    """Derived table kept within ``target_lag`` of its source.

    A dynamic table is either a filter/projection view or a grouped
    aggregation. Row-level logic is registered with decorators that
    receive and return ibis expressions:

    Example:
        transactions_clean = DynamicTable(
            name="transactions_clean",
            source=transactions_raw,
            target_lag="1 minute",
            columns=["transaction_id", "amount", "risk_score"],
        )

        @transactions_clean.filter()
        def approved(t):
            return (t.status == "APPROVED") & ~t.fraud_flag

        daily = DynamicTable(
            name="daily_summary",
            source=transactions_clean,
            target_lag="5 minutes",
            group_by=["transaction_date"],
        )

        @daily.derive("transaction_date")
        def transaction_date(t):
            return t.transaction_ts.date()

        daily.aggregate("total_amount", column="amount", function="sum")

    ``target_lag="downstream"`` defers the lag to the tightest lag among
    the tables that read from this one.
    """

    name: str
    description: str | None = None
    source: RawTable | DynamicTable
    target_lag: TargetLag = timedelta(minutes=1)
    refresh_mode: RefreshMode = "auto"
    columns: list[str] | None = None
    group_by: list[str] | None = None
    checks: dict[str, Field] | None = None
    owner: str | None = None
    tags: dict[str, str] | None = None

    _filters: list[Callable] = pdt.PrivateAttr(default_factory=list)
    _derived: dict[str, Callable] = pdt.PrivateAttr(default_factory=dict)
    _aggregates: list[dict] = pdt.PrivateAttr(default_factory=list)
    _metrics: dict[str, Callable] = pdt.PrivateAttr(default_factory=dict)

    @pdt.field_validator("target_lag", mode="before")
    @classmethod
    def _parse_lag(cls, value: Any) -> Any:
        return parse_target_lag(value)

    @pdt.model_validator(mode="after")
    def validate_shape(self) -> "DynamicTable":
        if self.source.name == self.name:
            raise errors.DependencyError(
                context=f"Validating DynamicTable '{self.name}'",
                cause="A dynamic table cannot read from itself",
                fix="Point source at a different raw or dynamic table.",
            )
        if isinstance(self.target_lag, timedelta) and self.target_lag <= timedelta(0):
            raise errors.DefinitionError(
                context=f"Validating DynamicTable '{self.name}'",
                cause=f"target_lag must be positive, got {self.target_lag}",
                fix="Use a lag such as '1 minute' or 'downstream'.",
            )
        if self.columns is not None and self.group_by is not None:
            raise errors.DefinitionError(
                context=f"Validating DynamicTable '{self.name}'",
                cause="columns and group_by are mutually exclusive",
                fix="Aggregations project their group keys and aggregates; drop columns.",
            )
        if self.group_by is not None and not self.group_by:
            raise errors.DefinitionError(
                context=f"Validating DynamicTable '{self.name}'",
                cause="group_by cannot be empty",
                fix="Provide at least one group key or omit group_by.",
            )
        return self

    @property
    def kind(self) -> str:
        return "dynamic_table"

    @property
    def source_name(self) -> str:
        return self.source.name

    @property
    def upstream_names(self) -> list[str]:
        return [self.source.name]

    @property
    def is_aggregate(self) -> bool:
        return self.group_by is not None

    @property
    def is_derived(self) -> bool:
        """True if this table reads from another dynamic table."""
        return isinstance(self.source, DynamicTable)

    def validate_definition(self) -> None:
        """Check decorator-registered parts are consistent with the shape.

        Run before compiling; construction cannot check this because
        aggregates and metrics are added after the model is built.
        """
        if self.is_aggregate and not self._aggregates:
            raise errors.DefinitionError(
                context=f"Validating DynamicTable '{self.name}'",
                cause="group_by is set but no aggregates are defined",
                fix=f"Call {self.name}.aggregate(...) at least once.",
            )
        if not self.is_aggregate and (self._aggregates or self._metrics):
            raise errors.DefinitionError(
                context=f"Validating DynamicTable '{self.name}'",
                cause="Aggregates and metrics require group_by",
                fix="Set group_by to the grouping keys.",
            )

    def filter(self) -> Callable[[Callable], Callable]:
        """Decorator registering a row predicate (ibis.Table -> boolean)."""

        def decorator(func: Callable) -> Callable:
            self._filters.append(func)
            return func

        return decorator

    def derive(self, name: str) -> Callable[[Callable], Callable]:
        """Decorator registering a computed column (ibis.Table -> column).

        Derived columns are added before filters run, so predicates and
        group keys may reference them.
        """

        def decorator(func: Callable) -> Callable:
            self._derived[name] = func
            return func

        return decorator

    def aggregate(
        self,
        name: str,
        column: str,
        function: AggFunction,
        *,
        where: Callable | None = None,
    ) -> None:
        """Define an aggregate output column.

        Args:
            name: Output column name.
            column: Input column to aggregate.
            function: One of sum, count, avg, min, max, count_distinct.
            where: Optional predicate restricting the rows aggregated,
                the equivalent of ``SUM(CASE WHEN ... THEN x ELSE 0 END)``.
        """
        valid = {"sum", "count", "avg", "min", "max", "count_distinct"}
        if function not in valid:
            raise errors.DefinitionError(
                context=f"Defining aggregate '{name}' on DynamicTable '{self.name}'",
                cause=f"Unsupported aggregation function '{function}'",
                fix=f"Use one of: {', '.join(sorted(valid))}.",
            )
        if any(agg["name"] == name for agg in self._aggregates) or name in self._metrics:
            raise errors.DefinitionError(
                context=f"Defining aggregate '{name}' on DynamicTable '{self.name}'",
                cause=f"Output column '{name}' is already defined",
                fix="Choose a unique output column name.",
            )
        self._aggregates.append(
            {"name": name, "column": column, "function": function, "where": where}
        )

    def metric(self, name: str) -> Callable[[Callable], Callable]:
        """Decorator registering a column computed from the aggregates.

        The function receives the aggregated ibis table, e.g.
        ``(t.fraud_count * 100.0 / t.total_transactions).round(2)``.
        """

        def decorator(func: Callable) -> Callable:
            self._metrics[name] = func
            return func

        return decorator

    def output_names(self) -> list[str] | None:
        """Output column names when knowable without compiling."""
        if self.is_aggregate:
            return (
                list(self.group_by or [])
                + [agg["name"] for agg in self._aggregates]
                + list(self._metrics)
            )
        return list(self.columns) if self.columns is not None else None


DynamicTable.model_rebuild()
