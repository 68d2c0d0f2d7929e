"""Canonical serialization for fingerprinting.

This module turns argument values into a tagged, JSON-compatible structure
whose serialization is identical across calls and process restarts. Values
that have no stable serialization are rejected rather than approximated.

Objects that stand for stored data (assets, lazy handles) implement
``__fingerprint_token__()`` and are represented by that token instead of
their contents, so fingerprinting never reads the data itself.
"""

import dataclasses
import enum
import hashlib
import inspect
import json
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import PurePath
from typing import Any

import numpy as np
import pandas as pd
from pydantic import BaseModel


class NonDeterministicInputError(Exception):
    """Raised when an argument cannot be canonically serialized."""

    pass


def canonical_json(value: Any) -> str:
    """Serialize an already-canonical structure to its stable JSON text.

    Args:
        value: Output of ``canonicalize``

    Returns:
        Compact JSON with sorted keys
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _qualified_type_name(obj: Any) -> str:
    cls = obj if isinstance(obj, type) else type(obj)
    return f"{cls.__module__}.{cls.__qualname__}"


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonicalize(value: Any, path: str = "arg") -> Any:
    """Convert a value into its canonical tagged form.

    Every node is a list whose first element is a type tag, so values that
    merely print alike (``1``, ``1.0``, ``"1"``, ``True``) never collide.

    Args:
        value: Value to canonicalize
        path: Human-readable location of the value, used in error messages

    Returns:
        JSON-compatible canonical structure

    Raises:
        NonDeterministicInputError: If the value (or anything nested in it)
            has no deterministic serialization
    """
    return _canonicalize(value, path, set())


def callable_state(func: Any, path: str = "<function>") -> Any:
    """Canonical form of the state a callable carries beyond its code.

    Two callables with the same source can still compute different things:
    closures differ in their captured cells, bound methods in their
    ``__self__``, and callable instances in their attributes. That state is
    canonicalized here so it can join the function identity.

    Args:
        func: Function, bound method or callable instance
        path: Location used in error messages

    Returns:
        Canonical structure; ``["closure", []]`` for a plain function

    Raises:
        NonDeterministicInputError: If the captured state cannot be canonicalized
    """
    return _callable_state(func, path, set())


def _callable_state(func: Any, path: str, active: set[int]) -> Any:
    marker = id(func)
    if marker in active:
        # Recursive closures and methods stored on their own instance
        return ["cycle"]
    active.add(marker)
    try:
        target = inspect.unwrap(func)
        if inspect.ismethod(target):
            owner = target.__self__
            if isinstance(owner, type):
                bound = ["class", _qualified_type_name(owner)]
            else:
                bound = _canonicalize_instance(owner, f"{path}.__self__", active)
            return ["method", bound, _callable_state(target.__func__, path, active)]
        if inspect.isfunction(target):
            captured = []
            for name, cell in zip(target.__code__.co_freevars, target.__closure__ or ()):
                try:
                    contents = cell.cell_contents
                except ValueError:
                    captured.append([name, ["unbound"]])
                    continue
                captured.append([name, _canonicalize(contents, f"{path}<closure {name}>", active)])
            return ["closure", captured]
        if inspect.isbuiltin(target) or isinstance(target, type):
            return ["none"]
        return ["instance", _canonicalize_instance(target, path, active)]
    finally:
        active.discard(marker)


def _canonicalize_instance(obj: Any, path: str, active: set[int]) -> Any:
    if getattr(obj, "__fingerprint_token__", None) is not None or isinstance(obj, BaseModel) or (
        dataclasses.is_dataclass(obj)
    ):
        return _canonicalize(obj, path, active)

    marker = id(obj)
    if marker in active:
        return ["cycle"]
    state = getattr(obj, "__dict__", None)
    if state is None:
        state = {}
        for cls in type(obj).__mro__:
            slots = getattr(cls, "__slots__", ())
            for name in (slots,) if isinstance(slots, str) else slots:
                if name not in ("__dict__", "__weakref__") and hasattr(obj, name):
                    state[name] = getattr(obj, name)
    active.add(marker)
    try:
        return ["object", _qualified_type_name(obj), _canonicalize(dict(state), path, active)]
    finally:
        active.discard(marker)


def _canonicalize(value: Any, path: str, active: set[int]) -> Any:
    if value is None:
        return ["none"]

    # numpy scalars subclass Python numbers; check them first
    if isinstance(value, np.generic):
        return ["np_scalar", value.dtype.str, _canonicalize(value.item(), path, active)]

    if isinstance(value, bool):
        return ["bool", value]
    if isinstance(value, int):
        return ["int", str(value)]
    if isinstance(value, float):
        return ["float", repr(float(value))]
    if isinstance(value, str):
        return ["str", value]
    if isinstance(value, (bytes, bytearray)):
        return ["bytes", bytes(value).hex()]
    if isinstance(value, Decimal):
        return ["decimal", str(value)]
    if isinstance(value, datetime):
        return ["datetime", value.isoformat()]
    if isinstance(value, date):
        return ["date", value.isoformat()]
    if isinstance(value, time):
        return ["time", value.isoformat()]
    if isinstance(value, enum.Enum):
        return ["enum", _qualified_type_name(value), _canonicalize(value.value, path, active)]
    if isinstance(value, PurePath):
        return ["path", value.as_posix()]

    token_method = getattr(value, "__fingerprint_token__", None)
    if token_method is not None and not isinstance(value, type):
        return ["ref", type(value).__name__, _canonicalize(token_method(), path, active)]

    if isinstance(value, np.ndarray):
        return _canonicalize_ndarray(value, path, active)
    if isinstance(value, pd.DataFrame):
        return _canonicalize_dataframe(value, path)
    if isinstance(value, pd.Series):
        return _canonicalize_series(value, path)

    if inspect.isfunction(value) or inspect.ismethod(value) or inspect.isbuiltin(value):
        from .identity import function_identity

        return ["function", function_identity(value), _callable_state(value, path, active)]

    if isinstance(value, (list, tuple, dict, set, frozenset, BaseModel)) or (
        dataclasses.is_dataclass(value) and not isinstance(value, type)
    ):
        marker = id(value)
        if marker in active:
            raise NonDeterministicInputError(f"Argument {path} contains a reference cycle")
        active.add(marker)
        try:
            return _canonicalize_container(value, path, active)
        finally:
            active.discard(marker)

    raise NonDeterministicInputError(
        f"Argument {path} of type {_qualified_type_name(value)} cannot be canonically serialized"
    )


def _canonicalize_container(value: Any, path: str, active: set[int]) -> Any:
    if isinstance(value, BaseModel):
        dumped = value.model_dump(mode="python")
        return ["model", _qualified_type_name(value), _canonicalize(dumped, path, active)]

    if dataclasses.is_dataclass(value):
        fields = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
        return ["dataclass", _qualified_type_name(value), _canonicalize(fields, path, active)]

    if isinstance(value, list):
        return ["list", [_canonicalize(v, f"{path}[{i}]", active) for i, v in enumerate(value)]]
    if isinstance(value, tuple):
        return ["tuple", [_canonicalize(v, f"{path}[{i}]", active) for i, v in enumerate(value)]]

    if isinstance(value, dict):
        items = []
        for key, item in value.items():
            canonical_key = _canonicalize(key, f"{path}<key>", active)
            items.append([canonical_key, _canonicalize(item, f"{path}[{key!r}]", active)])
        items.sort(key=lambda pair: canonical_json(pair[0]))
        return ["dict", items]

    # Sets have no intrinsic order: normalize by the canonical form of each member
    members = [_canonicalize(v, f"{path}<member>", active) for v in value]
    members.sort(key=canonical_json)
    return ["set", members]


def _canonicalize_ndarray(value: np.ndarray, path: str, active: set[int]) -> Any:
    if value.dtype.hasobject:
        return ["ndarray_obj", list(value.shape), _canonicalize(value.tolist(), path, active)]
    digest = _sha256(np.ascontiguousarray(value).tobytes())
    return ["ndarray", value.dtype.str, list(value.shape), digest]


def _canonicalize_dataframe(value: pd.DataFrame, path: str) -> Any:
    try:
        row_hashes = pd.util.hash_pandas_object(value, index=True).to_numpy()
    except TypeError as e:
        raise NonDeterministicInputError(
            f"Argument {path} is a DataFrame with unhashable cell values: {e}"
        ) from e
    columns = [str(c) for c in value.columns]
    dtypes = [str(t) for t in value.dtypes]
    return ["dataframe", columns, dtypes, _sha256(row_hashes.tobytes())]


def _canonicalize_series(value: pd.Series, path: str) -> Any:
    try:
        row_hashes = pd.util.hash_pandas_object(value, index=True).to_numpy()
    except TypeError as e:
        raise NonDeterministicInputError(
            f"Argument {path} is a Series with unhashable values: {e}"
        ) from e
    return ["series", str(value.name), str(value.dtype), _sha256(row_hashes.tobytes())]
