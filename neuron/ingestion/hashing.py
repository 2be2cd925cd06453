"""
Content hashing for change detection.

The hash covers a record's semantic fields only, serialized as canonical
JSON (sorted keys, no whitespace), so re-syncing an unchanged record
always yields the same digest.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

from neuron.ingestion.types import IngestionRecord


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def stable_stringify(value: Any) -> str:
    """Canonical JSON: sorted keys, compact separators, datetimes as ISO strings."""
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_default
    )


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_ingestion_record(record: IngestionRecord) -> str:
    """Deterministic digest of the record's semantic content (sync timestamps excluded)."""
    return sha256_hex(
        stable_stringify(
            {
                "external_id": record.external_id,
                "title": record.title,
                "content": record.content,
                "url": record.url,
                "metadata": record.metadata,
                "node_type": record.node_type,
                "domain": record.domain,
                "references": record.references,
                "parent_external_id": record.parent_external_id,
            }
        )
    )
