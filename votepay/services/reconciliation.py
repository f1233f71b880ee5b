"""
Reference resolution and status vocabulary mapping for aggregator callbacks.
"""

import os
from typing import Optional

UUID_LENGTH = 36

LEGACY_REFERENCE_PREFIX = os.getenv("LEGACY_REFERENCE_PREFIX", "PRELYCT")

COMPLETED_PROVIDER_STATUSES = frozenset({"success", "successful", "completed"})
FAILED_PROVIDER_STATUSES = frozenset({"failed", "error", "declined", "cancelled"})

# durable status -> tracker / API status
TRACKER_STATUS_BY_PERSISTENT = {
    "completed": "success",
    "failed": "failed",
    "refunded": "failed",
}


def resolve_reference(ext_reference: Optional[str], prefix: str = None) -> Optional[str]:
    """
    Map the reference the aggregator echoes back to our transaction id.

    A 36-character reference is a bare UUID and is returned as is. The legacy
    form `PREFIX-<id>-<timestamp>` yields `<id>`; the id may contain hyphens,
    the timestamp is the last segment. Anything else resolves to None.
    """
    if not ext_reference:
        return None

    if len(ext_reference) == UUID_LENGTH:
        return ext_reference

    legacy_prefix = f"{prefix or LEGACY_REFERENCE_PREFIX}-"
    if not ext_reference.startswith(legacy_prefix):
        return None

    transaction_id, separator, timestamp = ext_reference[len(legacy_prefix):].rpartition("-")
    if not separator or not transaction_id or not timestamp:
        return None

    return transaction_id


def normalize_provider_status(status: Optional[str]) -> str:
    """
    Collapse the aggregator's status strings to `completed`, `failed` or `pending`.

    Unknown or empty values stay `pending`; success is never assumed.
    """
    value = (status or "").strip().lower()

    if value in COMPLETED_PROVIDER_STATUSES:
        return "completed"
    if value in FAILED_PROVIDER_STATUSES:
        return "failed"
    return "pending"


def to_tracker_status(persistent_status: Optional[str]) -> str:
    return TRACKER_STATUS_BY_PERSISTENT.get(persistent_status or "", "pending")
