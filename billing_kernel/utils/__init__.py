"""Utility modules for the billing kernel."""

from billing_kernel.utils.hashing import (
    canonical_json,
    hash_change_record,
    hash_payload,
    sha256_hex,
)

__all__ = [
    "canonical_json",
    "hash_change_record",
    "hash_payload",
    "sha256_hex",
]
