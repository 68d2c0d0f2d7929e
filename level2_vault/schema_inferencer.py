"""Schema inference for vault assets.

This module assigns a semantic type to each column of a table. Types are
derived from the column's dtype only, never from its values, so the schema
of two versions with the same dtypes always compares equal.
"""

import logging

import pandas as pd

from .asset import ColumnSpec

logger = logging.getLogger(__name__)


class SemanticType:
    """Semantic type constants for columns."""

    NUMERIC = "numeric"
    CATEGORICAL = "categorical"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    TEXT = "text"
    OTHER = "other"


def infer_semantic_type(series: pd.Series) -> str:
    """Infer semantic type for a pandas Series.

    Args:
        series: pandas Series to analyze

    Returns:
        Semantic type string (numeric, categorical, boolean, datetime, text, other)
    """
    if pd.api.types.is_bool_dtype(series):
        return SemanticType.BOOLEAN

    if pd.api.types.is_datetime64_any_dtype(series):
        return SemanticType.DATETIME

    if isinstance(series.dtype, pd.CategoricalDtype):
        return SemanticType.CATEGORICAL

    if pd.api.types.is_numeric_dtype(series):
        return SemanticType.NUMERIC

    if pd.api.types.is_string_dtype(series) or pd.api.types.is_object_dtype(series):
        return SemanticType.TEXT

    return SemanticType.OTHER


def infer_schema(df: pd.DataFrame) -> tuple[ColumnSpec, ...]:
    """Infer the ordered semantic schema of a DataFrame.

    Args:
        df: DataFrame to analyze

    Returns:
        Tuple of ColumnSpec in column order
    """
    schema = tuple(
        ColumnSpec(name=str(column_name), semantic_type=infer_semantic_type(df[column_name]))
        for column_name in df.columns
    )
    for spec in schema:
        logger.debug(f"Column '{spec.name}': type={spec.semantic_type}")
    return schema
