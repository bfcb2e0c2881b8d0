"""
Hashes behind the change record chain.

A record's ``payload_hash`` covers its canonical payload.  Its chain
``hash`` covers the entity, the field, that payload hash and the previous
record's hash, so rewriting or splicing out any stored record breaks the
check at that record.
"""

import hashlib
import json
from collections.abc import Mapping
from typing import Any

GENESIS = "GENESIS"


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def canonical_json(payload: Mapping[str, Any]) -> str:
    """Sorted keys, no whitespace.  Values must already be JSON scalars."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def hash_payload(payload: Mapping[str, Any]) -> str:
    return sha256_hex(canonical_json(payload))


def hash_change_record(
    entity_type: str,
    entity_id: str,
    field_name: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """Chain hash of one record; ``prev_hash`` is None only for the first."""
    return sha256_hex(
        "|".join((entity_type, entity_id, field_name, payload_hash, prev_hash or GENESIS))
    )
