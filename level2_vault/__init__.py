"""Level 2: Data Vault.

This module stores named, versioned columnar datasets and hands out lazy
handles over them. Versions are immutable: writing under an existing name
always creates a new version.
"""

from .asset import Asset, ColumnSpec
from .lazy_handle import (
    AGGREGATE_FUNCTIONS,
    FILTER_OPERATORS,
    AssetReadError,
    FilterClause,
    LazyHandle,
    MaterializationCancelledError,
)
from .schema_inferencer import SemanticType, infer_schema, infer_semantic_type
from .vault import (
    AssetNotFoundError,
    DataVault,
    InvalidTabularDataError,
    SchemaConflictError,
    VaultStorageError,
    validate_asset_name,
)

__all__ = [
    "AGGREGATE_FUNCTIONS",
    "FILTER_OPERATORS",
    "Asset",
    "AssetNotFoundError",
    "AssetReadError",
    "ColumnSpec",
    "DataVault",
    "FilterClause",
    "InvalidTabularDataError",
    "LazyHandle",
    "MaterializationCancelledError",
    "SchemaConflictError",
    "SemanticType",
    "VaultStorageError",
    "infer_schema",
    "infer_semantic_type",
    "validate_asset_name",
]
