"""Audit entry hashing and chain verification.

Each override attempt is recorded with a SHA-256 hash over its own fields and
the hash of the previous entry for the same phase. Rewriting or removing any
entry breaks the chain from that point on.
"""

import hashlib
import json
import uuid
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

HASHED_FIELDS = (
    "id",
    "project_id",
    "phase_number",
    "sequence",
    "actor",
    "reason",
    "timestamp",
    "outcome",
    "error_code",
    "failing_rule_id",
    "failing_rule_description",
    "rule_set_version",
)


class AuditOutcome(StrEnum):
    APPROVED = "approved"
    REJECTED = "rejected"


def _normalize(value: Any) -> Any:
    if isinstance(value, datetime):
        # SQLite hands back naive datetimes; everything is written in UTC
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat()
    if isinstance(value, StrEnum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def compute_entry_hash(fields: Mapping[str, Any], prev_hash: str | None) -> str:
    payload = {name: _normalize(fields.get(name)) for name in HASHED_FIELDS}
    payload["prev_hash"] = prev_hash
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def entry_fields(entry: Any) -> dict[str, Any]:
    """Read the hashed fields off an ORM row or any attribute-bearing object."""
    return {name: getattr(entry, name) for name in HASHED_FIELDS}


def verify_chain(entries: Iterable[Any]) -> list[str]:
    """Verify a phase's entries in sequence order.

    Returns:
        List of problems found (empty when the chain is intact)
    """
    problems: list[str] = []
    prev_hash: str | None = None
    expected_sequence = 1
    for entry in entries:
        if entry.sequence != expected_sequence:
            problems.append(f"entry {entry.id}: sequence {entry.sequence}, expected {expected_sequence}")
        if entry.prev_hash != prev_hash:
            problems.append(f"entry {entry.id}: chain broken prev={entry.prev_hash!r} expected={prev_hash!r}")
        actual = compute_entry_hash(entry_fields(entry), entry.prev_hash)
        if actual != entry.entry_hash:
            problems.append(f"entry {entry.id}: hash mismatch")
        prev_hash = entry.entry_hash
        expected_sequence = entry.sequence + 1
    return problems
