"""Lazy handles over vault assets.

A LazyHandle is an immutable query plan bound to one asset version. Plan
operations (``select``, ``filter``, ``group_by(...).agg``, ``head``) return new
handles and never touch the data; only ``materialize`` performs I/O.

Projection and row filters are pushed into the Parquet scanner so that only
the needed columns and row groups are read. Aggregations run on the scanned
Arrow table, which holds only the key and aggregated columns.
"""

import threading
from dataclasses import dataclass, field, replace
from typing import Any, Optional

import pandas as pd
import pyarrow as pa
import pyarrow.dataset as ds

from utils import get_logger

from .asset import Asset, ColumnSpec
from .schema_inferencer import SemanticType

logger = get_logger(__name__)

FILTER_OPERATORS = ("==", "!=", "<", "<=", ">", ">=", "in", "not in")
AGGREGATE_FUNCTIONS = ("sum", "mean", "min", "max", "count")


class MaterializationCancelledError(Exception):
    """Raised when a pending materialization is cancelled by the caller."""

    pass


class AssetReadError(Exception):
    """Raised when an asset version cannot be read from storage."""

    pass


@dataclass(frozen=True)
class FilterClause:
    """A single row predicate: ``column op value``."""

    column: str
    op: str
    value: Any

    def to_expression(self) -> ds.Expression:
        """Convert the clause into a scanner filter expression."""
        column = ds.field(self.column)
        if self.op == "==":
            return column == self.value
        if self.op == "!=":
            return column != self.value
        if self.op == "<":
            return column < self.value
        if self.op == "<=":
            return column <= self.value
        if self.op == ">":
            return column > self.value
        if self.op == ">=":
            return column >= self.value
        if self.op == "in":
            return column.isin(list(self.value))
        return ~column.isin(list(self.value))


@dataclass(frozen=True)
class LazyHandle:
    """Deferred view of one asset version.

    Handles are values: every plan operation returns a new handle, so a handle
    can be shared between callers and reused for fingerprinting.
    """

    asset: Asset
    columns: Optional[tuple[str, ...]] = None
    filters: tuple[FilterClause, ...] = ()
    group_keys: tuple[str, ...] = ()
    aggregations: tuple[tuple[str, str], ...] = ()
    limit: Optional[int] = None
    _grouped: bool = field(default=False, repr=False)

    @property
    def name(self) -> str:
        return self.asset.name

    @property
    def version(self) -> int:
        return self.asset.version

    @property
    def is_aggregated(self) -> bool:
        return bool(self.aggregations)

    @property
    def schema(self) -> tuple[ColumnSpec, ...]:
        """Get the schema of the rows this handle would materialize."""
        if self.is_aggregated:
            keys = tuple(spec for spec in self.asset.schema if spec.name in self.group_keys)
            keys = tuple(sorted(keys, key=lambda spec: self.group_keys.index(spec.name)))
            aggregated = tuple(
                ColumnSpec(name=f"{column}_{func}", semantic_type=SemanticType.NUMERIC)
                for column, func in self.aggregations
            )
            return keys + aggregated
        if self.columns is None:
            return self.asset.schema
        by_name = {spec.name: spec for spec in self.asset.schema}
        return tuple(by_name[name] for name in self.columns)

    @property
    def column_names(self) -> list[str]:
        return [spec.name for spec in self.schema]

    def _require_columns(self, columns: tuple[str, ...]) -> None:
        known = set(self.asset.column_names)
        missing = [c for c in columns if c not in known]
        if missing:
            raise KeyError(
                f"Columns {missing} not found in asset '{self.asset.name}' v{self.asset.version}"
            )

    def _require_ungrouped(self, operation: str) -> None:
        if self.is_aggregated or self._grouped:
            raise ValueError(f"{operation} must be applied before group_by")

    def select(self, *columns: str) -> "LazyHandle":
        """Project the handle onto a subset of columns.

        Args:
            *columns: Column names, in the desired output order

        Returns:
            New handle reading only those columns

        Raises:
            KeyError: If a column is not part of the asset schema
            ValueError: If called after group_by or with no columns
        """
        self._require_ungrouped("select")
        if not columns:
            raise ValueError("select requires at least one column")
        self._require_columns(columns)
        if self.columns is not None:
            outside = [c for c in columns if c not in self.columns]
            if outside:
                raise KeyError(f"Columns {outside} were projected away by an earlier select")
        return replace(self, columns=tuple(columns))

    def filter(self, column: str, op: str, value: Any) -> "LazyHandle":
        """Restrict rows with a predicate on one column.

        Filters are combined with AND. The column need not be projected.

        Args:
            column: Column the predicate applies to
            op: One of ``== != < <= > >= in not in``
            value: Comparison value (an iterable for ``in`` / ``not in``)

        Returns:
            New handle with the predicate added

        Raises:
            KeyError: If the column is not part of the asset schema
            ValueError: If the operator is unknown or called after group_by or head
        """
        self._require_ungrouped("filter")
        if self.limit is not None:
            raise ValueError("filter must be applied before head")
        if op not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator '{op}'. Supported: {FILTER_OPERATORS}")
        self._require_columns((column,))
        if op in ("in", "not in"):
            if isinstance(value, (str, bytes)):
                raise ValueError(f"Operator '{op}' requires a collection of values")
            value = tuple(value)
        return replace(self, filters=self.filters + (FilterClause(column, op, value),))

    def group_by(self, *keys: str) -> "LazyHandle":
        """Start an aggregation grouped by ``keys``; finish it with ``agg``."""
        self._require_ungrouped("group_by")
        if self.limit is not None:
            raise ValueError("head must be applied after aggregation")
        if not keys:
            raise ValueError("group_by requires at least one key")
        self._require_columns(keys)
        return replace(self, group_keys=tuple(keys), _grouped=True)

    def agg(self, spec: dict[str, str | list[str]]) -> "LazyHandle":
        """Aggregate the grouped handle.

        Args:
            spec: Mapping of column to an aggregate function name or list of names
                (``sum``, ``mean``, ``min``, ``max``, ``count``). Output columns
                are named ``<column>_<function>``.

        Returns:
            New aggregated handle

        Raises:
            ValueError: If not grouped, spec is empty, or a function is unknown
        """
        if not self._grouped or self.is_aggregated:
            raise ValueError("agg must directly follow group_by")
        if not spec:
            raise ValueError("agg requires at least one column")

        aggregations = []
        for column, funcs in spec.items():
            self._require_columns((column,))
            for func in [funcs] if isinstance(funcs, str) else list(funcs):
                if func not in AGGREGATE_FUNCTIONS:
                    raise ValueError(
                        f"Unsupported aggregate '{func}'. Supported: {AGGREGATE_FUNCTIONS}"
                    )
                aggregations.append((column, func))
        return replace(self, aggregations=tuple(aggregations))

    def head(self, n: int) -> "LazyHandle":
        """Limit the handle to the first ``n`` output rows."""
        if n < 0:
            raise ValueError("head requires a non-negative row count")
        limit = n if self.limit is None else min(self.limit, n)
        return replace(self, limit=limit)

    def _scan_columns(self) -> list[str]:
        if self.is_aggregated:
            needed = list(self.group_keys)
            for column, _ in self.aggregations:
                if column not in needed:
                    needed.append(column)
            return needed
        if self.columns is not None:
            return list(self.columns)
        return self.asset.column_names

    def _filter_expression(self) -> Optional[ds.Expression]:
        expression = None
        for clause in self.filters:
            clause_expression = clause.to_expression()
            expression = clause_expression if expression is None else expression & clause_expression
        return expression

    def materialize(self, cancel_event: Optional[threading.Event] = None) -> pd.DataFrame:
        """Execute the plan and return an in-memory table.

        Materialization is all-or-nothing: if ``cancel_event`` is set while
        batches are being read, everything read so far is discarded.

        Args:
            cancel_event: Optional event a caller can set to cancel the read

        Returns:
            pandas DataFrame with the planned rows and columns

        Raises:
            MaterializationCancelledError: If the read was cancelled
            AssetReadError: If the version file cannot be read
        """
        logger.debug(f"Materializing {self!r}")
        scan_columns = self._scan_columns()
        try:
            dataset = ds.dataset(str(self.asset.storage_location), format="parquet")
            scanner = dataset.scanner(columns=scan_columns, filter=self._filter_expression())
            batches = []
            rows = 0
            early_stop = self.limit is not None and not self.is_aggregated
            for batch in scanner.to_batches():
                if cancel_event is not None and cancel_event.is_set():
                    raise MaterializationCancelledError(
                        f"Materialization of '{self.asset.name}' v{self.asset.version} cancelled"
                    )
                batches.append(batch)
                rows += batch.num_rows
                if early_stop and rows >= self.limit:
                    break
            if cancel_event is not None and cancel_event.is_set():
                raise MaterializationCancelledError(
                    f"Materialization of '{self.asset.name}' v{self.asset.version} cancelled"
                )
            table = pa.Table.from_batches(batches, schema=scanner.projected_schema)
        except (OSError, pa.ArrowException) as e:
            raise AssetReadError(
                f"Failed to read asset '{self.asset.name}' v{self.asset.version}: {e}"
            ) from e

        if self.is_aggregated:
            table = self._aggregate(table)
        if self.limit is not None:
            table = table.slice(0, self.limit)
        return table.to_pandas()

    def _aggregate(self, table: pa.Table) -> pa.Table:
        aggregated = table.group_by(list(self.group_keys)).aggregate(
            [(column, func) for column, func in self.aggregations]
        )
        ordered = list(self.group_keys) + [f"{column}_{func}" for column, func in self.aggregations]
        aggregated = aggregated.select(ordered)
        return aggregated.sort_by([(key, "ascending") for key in self.group_keys])

    def __fingerprint_token__(self) -> dict[str, Any]:
        return {
            "asset": self.asset.__fingerprint_token__(),
            "columns": list(self.columns) if self.columns is not None else None,
            "filters": [[c.column, c.op, c.value] for c in self.filters],
            "group_keys": list(self.group_keys),
            "aggregations": [list(a) for a in self.aggregations],
            "limit": self.limit,
        }

    def __repr__(self) -> str:
        parts = [f"{self.asset.name} v{self.asset.version}"]
        if self.columns is not None:
            parts.append(f"columns={list(self.columns)}")
        if self.filters:
            parts.append(
                "where " + " and ".join(f"{c.column} {c.op} {c.value!r}" for c in self.filters)
            )
        if self.is_aggregated:
            parts.append(f"group_by={list(self.group_keys)} agg={list(self.aggregations)}")
        if self.limit is not None:
            parts.append(f"limit={self.limit}")
        return f"LazyHandle({', '.join(parts)})"
