"""Utility modules for the DTE kernel."""

from dte_kernel.utils.hashing import canonicalize_json, hash_payload, sha256_hex

__all__ = [
    "canonicalize_json",
    "hash_payload",
    "sha256_hex",
]
