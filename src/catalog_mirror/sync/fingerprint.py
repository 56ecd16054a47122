"""Canonical content fingerprints for remote records.

The fingerprint is the SHA-256 hex digest of a canonical JSON encoding of
the record's identity and payload:

* object keys are sorted at every nesting level,
* array elements are sorted by their own canonical encoding,
* separators are compact and non-ASCII text is kept as-is.

Two records with the same field values therefore hash identically however
their keys or arrays happen to be ordered by the remote API.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from catalog_mirror.sync.models import RemoteRecord


def _canonical(value: Any) -> Any:
    """Return *value* with dict keys stringified and lists sorted."""
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_canonical(v) for v in value]
        return sorted(items, key=canonical_encode)
    return value


def canonical_encode(value: Any) -> str:
    """Encode *value* as key-sorted compact JSON."""
    return json.dumps(
        _canonical(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def fingerprint(record: RemoteRecord) -> str:
    """Compute the content fingerprint of *record*.

    Args:
        record: The remote record.

    Returns:
        64-character SHA-256 hex digest.
    """
    body = {
        "kind": record.kind.value,
        "external_id": record.external_id,
        "parent": record.parent_external_id,
        "payload": record.payload,
    }
    encoded = canonical_encode(body)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
