"""Fingerprint engine.

This module derives the fixed-length content hash that keys every cached
execution: a SHA-256 over the function identity token and the canonical form
of the call's arguments. It is a pure function of its inputs.
"""

import hashlib
import inspect
import string
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any, Optional

from .canonical import canonical_json, canonicalize
from .identity import callable_identity

FINGERPRINT_ALGORITHM = "sha256"
FINGERPRINT_LENGTH = 64
FINGERPRINT_FORMAT_VERSION = 1


def fingerprint(
    function_identity_token: str,
    positional_args: Sequence[Any] = (),
    keyword_args: Optional[Mapping[str, Any]] = None,
) -> str:
    """Compute the fingerprint of a call.

    Args:
        function_identity_token: Stable identity of the analysis function
        positional_args: Positional argument values
        keyword_args: Keyword argument values (order is irrelevant)

    Returns:
        Lowercase hex digest of FINGERPRINT_LENGTH characters

    Raises:
        NonDeterministicInputError: If any argument cannot be canonicalized
    """
    keyword_args = dict(keyword_args or {})
    document = {
        "format": FINGERPRINT_FORMAT_VERSION,
        "function": function_identity_token,
        "args": [canonicalize(v, f"args[{i}]") for i, v in enumerate(positional_args)],
        "kwargs": {k: canonicalize(v, k) for k, v in sorted(keyword_args.items())},
    }
    return hashlib.new(FINGERPRINT_ALGORITHM, canonical_json(document).encode("utf-8")).hexdigest()


def bind_arguments(
    func: Callable[..., Any],
    args: Sequence[Any],
    kwargs: Mapping[str, Any],
    exclude: Iterable[str] = (),
) -> tuple[tuple[Any, ...], dict[str, Any]]:
    """Normalize a call's arguments against the function signature.

    Named parameters are moved into the keyword mapping with defaults applied,
    so ``f(1, b=2)`` and ``f(a=1, b=2)`` fingerprint identically. Only extra
    ``*args`` values stay positional.

    Args:
        func: Function being called
        args: Positional arguments as supplied
        kwargs: Keyword arguments as supplied
        exclude: Parameter names to drop (injected capabilities)

    Returns:
        Tuple of (positional values, keyword mapping)

    Raises:
        TypeError: If the arguments do not match the signature
    """
    excluded = set(exclude)
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError):
        # Builtins without introspectable signatures
        return tuple(args), {k: v for k, v in kwargs.items() if k not in excluded}

    bound = signature.bind_partial(*args, **kwargs)
    bound.apply_defaults()

    positional: tuple[Any, ...] = ()
    named: dict[str, Any] = {}
    for name, value in bound.arguments.items():
        if name in excluded:
            continue
        kind = signature.parameters[name].kind
        if kind is inspect.Parameter.VAR_POSITIONAL:
            positional = tuple(value)
        elif kind is inspect.Parameter.VAR_KEYWORD:
            named.update(value)
        else:
            named[name] = value
    return positional, named


def fingerprint_call(
    func: Callable[..., Any],
    args: Sequence[Any] = (),
    kwargs: Optional[Mapping[str, Any]] = None,
    identity: Optional[str] = None,
    exclude: Iterable[str] = (),
) -> str:
    """Fingerprint a call to ``func`` with the given arguments.

    Args:
        func: Analysis function
        args: Positional arguments
        kwargs: Keyword arguments
        identity: Optional explicit identity token overriding the derived one;
            when given, captured state is not inspected
        exclude: Parameter names left out of the fingerprint

    Returns:
        Fingerprint hex string

    Raises:
        NonDeterministicInputError: If an argument, or the state captured by
            ``func`` without an explicit identity, cannot be canonicalized
    """
    positional, named = bind_arguments(func, args, kwargs or {}, exclude=exclude)
    token = identity or callable_identity(func)
    return fingerprint(token, positional, named)


def is_fingerprint(value: str) -> bool:
    """Check whether a string has the shape of a fingerprint."""
    return (
        isinstance(value, str)
        and len(value) == FINGERPRINT_LENGTH
        and all(c in string.hexdigits.lower() for c in value)
    )
