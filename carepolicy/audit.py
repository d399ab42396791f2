"""
Append-Only, Tamper-Evident Decision Audit Trail (Hash-Chained).

Every decision the evaluator makes -- allowed, denied, failed, or asked
about an unregistered policy -- can be recorded as a structured,
append-only entry.  Entries are linked via a SHA-256 hash chain: if any
entry is modified after the fact, ``verify_chain()`` reports where.

Entries record *who* asked for *what* and *why* it was decided, never the
record contents: attribute **keys** are stored, their values are not.
Metadata supplied by callers is still passed through PHI redaction before
export, since callers may attach free-form context.

One evaluator serves many concurrent requests, so appends are serialized
with a lock.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from carepolicy.errors import UnregisteredPolicy
from carepolicy.models import Decision, Subject


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Outcome categories of an authorization check."""

    ACCESS_ALLOWED = "ACCESS_ALLOWED"
    ACCESS_DENIED = "ACCESS_DENIED"
    EVALUATION_FAILED = "EVALUATION_FAILED"
    POLICY_UNREGISTERED = "POLICY_UNREGISTERED"


def event_type_for(decision: Decision) -> AuditEventType:
    """Map a decision onto its audit event type."""
    if isinstance(decision.error, UnregisteredPolicy):
        return AuditEventType.POLICY_UNREGISTERED
    if decision.error is not None:
        return AuditEventType.EVALUATION_FAILED
    if decision.allowed:
        return AuditEventType.ACCESS_ALLOWED
    return AuditEventType.ACCESS_DENIED


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single recorded decision, hash-linked to its predecessor."""

    entry_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this audit entry (UUID).",
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp of the decision.",
    )
    subject_id: str = Field(..., description="Identity of the subject that was checked.")
    subject_role: str = Field(..., description="Role of the subject at evaluation time.")
    resource_type: str = Field(..., description="Resource type tag of the check.")
    action: str = Field(..., description="select, insert, update or delete.")
    event_type: AuditEventType = Field(..., description="Outcome category.")
    reason: str = Field(default="", description="Decision reason (predicate names only).")
    error_kind: Optional[str] = Field(
        default=None,
        description="Kind of evaluation error, when the check could not complete.",
    )
    attribute_keys: list[str] = Field(
        default_factory=list,
        description="Attribute keys supplied with the check.  Values are never stored.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Caller-supplied context (request id, route...).",
    )
    previous_hash: str = Field(
        default="",
        description=(
            "SHA-256 hash of the previous entry's canonical representation. "
            "Empty string for the first entry ever recorded."
        ),
    )

    def canonical_bytes(self) -> bytes:
        """Deterministic byte representation used for hashing."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "subject_id": self.subject_id,
            "subject_role": self.subject_role,
            "resource_type": self.resource_type,
            "action": self.action,
            "event_type": self.event_type.value,
            "reason": self.reason,
            "error_kind": self.error_kind,
            "attribute_keys": self.attribute_keys,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()

    @classmethod
    def from_decision(
        cls,
        subject: Subject,
        resource_type: str,
        action: str,
        decision: Decision,
        attribute_keys: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> "AuditEntry":
        return cls(
            subject_id=subject.id,
            subject_role=subject.role.value,
            resource_type=resource_type,
            action=action,
            event_type=event_type_for(decision),
            reason=decision.reason,
            error_kind=getattr(decision.error, "kind", None) if decision.error else None,
            attribute_keys=sorted(attribute_keys or []),
            metadata=metadata or {},
        )


# ---------------------------------------------------------------------------
# PHI redaction patterns
# ---------------------------------------------------------------------------

_PHI_PATTERNS: dict[str, re.Pattern] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "dob": re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
}

_PHI_KEYS = {"name", "full_name", "first_name", "last_name", "dob", "date_of_birth",
             "ssn", "email", "phone", "phone_number", "address", "health_card_number"}


def redact_phi_from_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``metadata`` with PHI-looking fields redacted.

    Keys in the known-PHI list are replaced wholesale with ``[REDACTED]``;
    string values are scrubbed of SSN, date, phone and email patterns;
    nested mappings are handled recursively.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _PHI_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            for pattern_name, pattern in _PHI_PATTERNS.items():
                value = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", value)
            redacted[key] = value
        elif isinstance(value, dict):
            redacted[key] = redact_phi_from_metadata(value)
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class DecisionAuditLog:
    """Append-only decision log with SHA-256 hash chaining.

    There are no update or delete methods.  ``verify_chain()`` walks the
    retained log and returns the index of the first broken link.

    With ``max_entries`` set, only the newest entries are kept in memory.
    When the oldest entry is dropped, its hash becomes the chain anchor,
    so the first retained entry still verifies against its predecessor.
    ``evicted`` counts the entries dropped so far.

    Raises:
        ValueError: If ``max_entries`` is not positive.
    """

    def __init__(self, max_entries: Optional[int] = None) -> None:
        if max_entries is not None and max_entries <= 0:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries)
        self._hashes: deque[str] = deque(maxlen=max_entries)
        self._anchor = ""
        self.evicted = 0

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Link ``entry`` to the chain tail and append it."""
        with self._lock:
            entry.previous_hash = self._hashes[-1] if self._hashes else self._anchor
            if self.max_entries is not None and len(self._entries) == self.max_entries:
                self._anchor = self._hashes[0]
                self.evicted += 1
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        subject: Subject,
        resource_type: str,
        action: str,
        decision: Decision,
        attribute_keys: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AuditEntry:
        """Build an entry from a decision and append it."""
        return self.append(AuditEntry.from_decision(
            subject, resource_type, action, decision, attribute_keys, metadata
        ))

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Validate every hash link.

        Returns:
            ``(valid, broken_at)``; ``broken_at`` is the index of the first
            broken entry, or None when the chain is intact.
        """
        with self._lock:
            entries = list(self._entries)
            hashes = list(self._hashes)
            anchor = self._anchor

        for i, entry in enumerate(entries):
            expected_prev = anchor if i == 0 else entries[i - 1].compute_hash()
            if entry.previous_hash != expected_prev:
                return (False, i)
            if hashes[i] != entry.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        subject_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        """Return copies of the entries matching every given filter."""
        resource_type = getattr(resource_type, "value", resource_type)
        with self._lock:
            entries = list(self._entries)

        results = []
        for entry in entries:
            if subject_id is not None and entry.subject_id != subject_id:
                continue
            if resource_type is not None and entry.resource_type != resource_type:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        subject_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable bundle for access review.

        Metadata is PHI-redacted; the bundle includes the chain status.
        """
        entries = self.query(
            subject_id=subject_id,
            resource_type=resource_type,
            time_start=time_start,
            time_end=time_end,
        )

        exported = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            entry_dict["metadata"] = redact_phi_from_metadata(entry.metadata)
            exported.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()
        counts = {event.value: 0 for event in AuditEventType}
        for entry in entries:
            counts[entry.event_type.value] += 1

        return {
            "export_metadata": {
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(exported),
                "evicted_count": self.evicted,
                "outcome_counts": counts,
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": exported,
        }

    def __len__(self) -> int:
        return len(self._entries)
