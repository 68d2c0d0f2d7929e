"""Stable identity tokens for analysis functions."""

import functools
import hashlib
import inspect
from typing import Any, Callable

from .canonical import NonDeterministicInputError, callable_state, canonical_json

SOURCE_DIGEST_LENGTH = 16
STATE_DIGEST_LENGTH = 16


def function_identity(func: Callable[..., Any]) -> str:
    """Derive a stable identity token for a function.

    The token is ``module:qualname#digest`` where the digest covers the
    function's source text (or its bytecode when no source is available), so
    editing the body of an analysis changes its identity while moving it in
    memory does not.

    Args:
        func: Function or callable object

    Returns:
        Identity token string

    Raises:
        NonDeterministicInputError: If no stable name can be derived
    """
    if isinstance(func, functools.partial):
        raise NonDeterministicInputError(
            "functools.partial objects have no stable identity; pass the bound "
            "arguments explicitly or supply an identity token"
        )

    target = inspect.unwrap(func)
    if not (inspect.isfunction(target) or inspect.ismethod(target) or inspect.isbuiltin(target)):
        # Callable instances are identified by their class
        target = type(target)

    module = getattr(target, "__module__", None) or "<unknown>"
    qualname = getattr(target, "__qualname__", None) or getattr(target, "__name__", None)
    if not qualname:
        raise NonDeterministicInputError(f"Cannot derive a stable name for {func!r}")

    digest = _source_digest(target)
    if digest is None:
        return f"{module}:{qualname}"
    return f"{module}:{qualname}#{digest}"


def _source_digest(target: Any) -> str | None:
    try:
        source = inspect.getsource(target)
    except (OSError, TypeError):
        code = getattr(target, "__code__", None)
        if code is None:
            return None
        payload = code.co_code + "\x00".join(code.co_names).encode("utf-8")
    else:
        payload = source.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()[:SOURCE_DIGEST_LENGTH]


def callable_identity(func: Callable[..., Any]) -> str:
    """Identity token that also covers the state a callable carries.

    Plain module-level functions get their ``function_identity`` unchanged.
    Closures, bound methods and callable instances get an ``@digest`` suffix
    over their captured cells, ``__self__`` or attributes, so two closures
    built from the same factory with different values never share a token.

    Args:
        func: Function, bound method or callable instance

    Returns:
        Identity token string

    Raises:
        NonDeterministicInputError: If the name or the captured state has no
            stable form; pass an explicit identity token instead
    """
    token = function_identity(func)
    state = callable_state(func, path=getattr(func, "__qualname__", type(func).__qualname__))
    if state in (["closure", []], ["none"]):
        return token
    digest = hashlib.sha256(canonical_json(state).encode("utf-8")).hexdigest()
    return f"{token}@{digest[:STATE_DIGEST_LENGTH]}"
