"""Level 1: Fingerprint Engine.

This module derives stable content hashes from a function identity and its
argument values. It has no side effects and never reads stored data: assets
contribute their (name, version) token only.
"""

from .canonical import NonDeterministicInputError, callable_state, canonical_json, canonicalize
from .engine import (
    FINGERPRINT_LENGTH,
    bind_arguments,
    fingerprint,
    fingerprint_call,
    is_fingerprint,
)
from .identity import callable_identity, function_identity

__all__ = [
    "FINGERPRINT_LENGTH",
    "NonDeterministicInputError",
    "bind_arguments",
    "callable_identity",
    "callable_state",
    "canonical_json",
    "canonicalize",
    "fingerprint",
    "fingerprint_call",
    "function_identity",
    "is_fingerprint",
]
