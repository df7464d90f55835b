"""
Content hashing for card deduplication.

Two files whose decoded card JSON is identical, apart from the timestamps that
exporters rewrite on every save, hash to the same value.
"""

import hashlib
import json
from typing import Any

# Rewritten by exporters without changing the card, ignored at any depth
VOLATILE_KEYS = frozenset({"creation_date", "modification_date"})


def canonicalize_for_hash(value: Any) -> Any:
    """Sort object keys recursively and drop volatile keys."""
    if isinstance(value, dict):
        return {
            key: canonicalize_for_hash(value[key])
            for key in sorted(value)
            if key not in VOLATILE_KEYS
        }
    if isinstance(value, list):
        return [canonicalize_for_hash(item) for item in value]
    return value


def compute_content_hash(card_original_data: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of a decoded card."""
    canonical = canonicalize_for_hash(card_original_data)
    serialized = json.dumps(canonical, ensure_ascii=False, separators=(',', ':'), sort_keys=True)
    return hashlib.sha256(serialized.encode('utf-8')).hexdigest()
