"""
Tests for carepolicy.audit -- Append-Only, Tamper-Evident Decision Log.

Covers: append + chain verification, tamper detection, decision mapping,
query filtering, export format, PHI redaction, and concurrent appends.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from carepolicy.audit import (
    AuditEntry,
    AuditEventType,
    DecisionAuditLog,
    event_type_for,
    redact_phi_from_metadata,
)
from carepolicy.errors import MissingRequiredAttribute, UnregisteredPolicy
from carepolicy.models import Decision, Role, Subject


def _make_entry(
    subject_id: str = "u1",
    resource_type: str = "Patient",
    event_type: AuditEventType = AuditEventType.ACCESS_ALLOWED,
    metadata: dict | None = None,
) -> AuditEntry:
    """Helper to create audit entries for testing."""
    return AuditEntry(
        subject_id=subject_id,
        subject_role="user",
        resource_type=resource_type,
        action="select",
        event_type=event_type,
        reason="IsSelf",
        metadata=metadata or {},
    )


# ---------------------------------------------------------------------------
# 1. Append + chain verification
# ---------------------------------------------------------------------------

class TestAppendAndChainVerification:
    def test_append_single_entry(self):
        log = DecisionAuditLog()
        appended = log.append(_make_entry())
        assert appended.previous_hash == ""
        assert len(log) == 1

    def test_append_multiple_entries_builds_chain(self):
        log = DecisionAuditLog()
        e1 = log.append(_make_entry(subject_id="u1"))
        e2 = log.append(_make_entry(subject_id="u2"))
        e3 = log.append(_make_entry(subject_id="u3"))

        assert e1.previous_hash == ""
        assert e2.previous_hash == e1.compute_hash()
        assert e3.previous_hash == e2.compute_hash()

    def test_empty_log_is_valid(self):
        assert DecisionAuditLog().verify_chain() == (True, None)


# ---------------------------------------------------------------------------
# 2. Tamper detection
# ---------------------------------------------------------------------------

class TestTamperDetection:
    def test_modified_reason_breaks_chain(self):
        log = DecisionAuditLog()
        for i in range(3):
            log.append(_make_entry(subject_id=f"u{i}"))

        log._entries[1].reason = "IsAdmin"

        valid, broken_at = log.verify_chain()
        assert valid is False
        assert broken_at in (1, 2)

    def test_modified_first_entry_detected(self):
        log = DecisionAuditLog()
        log.append(_make_entry())
        log.append(_make_entry())

        log._entries[0].event_type = AuditEventType.ACCESS_DENIED

        valid, _ = log.verify_chain()
        assert valid is False


# ---------------------------------------------------------------------------
# 3. Decisions to entries
# ---------------------------------------------------------------------------

class TestDecisionMapping:
    def test_event_types(self):
        assert event_type_for(Decision(True, "IsSelf")) is AuditEventType.ACCESS_ALLOWED
        assert event_type_for(Decision(False, "denied")) is AuditEventType.ACCESS_DENIED
        failed = Decision(
            False,
            "evaluation failed: missing_attribute",
            error=MissingRequiredAttribute("patient_id", "Encounter", "insert"),
        )
        assert event_type_for(failed) is AuditEventType.EVALUATION_FAILED
        unregistered = Decision(
            False, "no policy", error=UnregisteredPolicy("Spaceship", "select")
        )
        assert event_type_for(unregistered) is AuditEventType.POLICY_UNREGISTERED

    def test_record_stores_keys_not_values(self):
        log = DecisionAuditLog()
        entry = log.record(
            Subject(id="u2", role=Role.PROVIDER),
            "Encounter",
            "insert",
            Decision(
                False,
                "evaluation failed: missing_attribute",
                error=MissingRequiredAttribute("patient_id", "Encounter", "insert"),
            ),
            attribute_keys=["provider_id", "encounter_id"],
        )
        assert entry.subject_role == "provider"
        assert entry.error_kind == "missing_attribute"
        assert entry.attribute_keys == ["encounter_id", "provider_id"]


# ---------------------------------------------------------------------------
# 4. Query filtering
# ---------------------------------------------------------------------------

class TestQueryFiltering:
    def test_query_by_subject(self):
        log = DecisionAuditLog()
        log.append(_make_entry(subject_id="u1"))
        log.append(_make_entry(subject_id="u2"))
        log.append(_make_entry(subject_id="u1"))

        results = log.query(subject_id="u1")
        assert len(results) == 2
        assert all(e.subject_id == "u1" for e in results)

    def test_query_by_resource_and_event_type(self):
        log = DecisionAuditLog()
        log.append(_make_entry(resource_type="Patient"))
        log.append(_make_entry(resource_type="Encounter", event_type=AuditEventType.ACCESS_DENIED))
        log.append(_make_entry(resource_type="Encounter"))

        results = log.query(resource_type="Encounter", event_type=AuditEventType.ACCESS_DENIED)
        assert len(results) == 1

    def test_query_by_time_range(self):
        log = DecisionAuditLog()
        now = datetime.now(timezone.utc)
        for hours in (2, 1, 0):
            entry = _make_entry()
            entry.timestamp = now - timedelta(hours=hours)
            log.append(entry)

        results = log.query(
            time_start=now - timedelta(hours=1, minutes=30),
            time_end=now - timedelta(minutes=30),
        )
        assert len(results) == 1

    def test_query_returns_copies(self):
        log = DecisionAuditLog()
        log.append(_make_entry())
        log.query()[0].reason = "changed"
        assert log.verify_chain() == (True, None)


# ---------------------------------------------------------------------------
# 5. PHI redaction and export
# ---------------------------------------------------------------------------

class TestExport:
    def test_redact_known_phi_keys(self):
        redacted = redact_phi_from_metadata({
            "name": "John Doe",
            "email": "john@example.com",
            "route": "/encounters",
        })
        assert redacted["name"] == "[REDACTED]"
        assert redacted["email"] == "[REDACTED]"
        assert redacted["route"] == "/encounters"

    def test_redact_patterns_in_nested_values(self):
        redacted = redact_phi_from_metadata({"request": {"note": "call 555-123-4567"}})
        assert "555-123-4567" not in redacted["request"]["note"]
        assert "[REDACTED-PHONE]" in redacted["request"]["note"]

    def test_export_bundle(self):
        log = DecisionAuditLog()
        log.append(_make_entry(metadata={"full_name": "Jane Doe", "request_id": "r1"}))
        log.append(_make_entry(event_type=AuditEventType.ACCESS_DENIED))
        log.append(_make_entry(subject_id="u9"))

        export = log.export_for_review(subject_id="u1")
        meta = export["export_metadata"]
        assert meta["entry_count"] == 2
        assert meta["chain_integrity"] == "VALID"
        assert meta["outcome_counts"]["ACCESS_ALLOWED"] == 1
        assert meta["outcome_counts"]["ACCESS_DENIED"] == 1
        assert meta["outcome_counts"]["EVALUATION_FAILED"] == 0
        assert export["entries"][0]["metadata"] == {
            "full_name": "[REDACTED]",
            "request_id": "r1",
        }

    def test_export_reports_broken_chain(self):
        log = DecisionAuditLog()
        log.append(_make_entry())
        log.append(_make_entry())
        log._entries[0].subject_id = "someone-else"
        export = log.export_for_review()
        assert export["export_metadata"]["chain_integrity"].startswith("BROKEN_AT_INDEX_")


# ---------------------------------------------------------------------------
# 6. Concurrent appends
# ---------------------------------------------------------------------------

class TestConcurrentAppends:
    def test_chain_stays_valid_under_threads(self):
        log = DecisionAuditLog()

        def worker(n):
            for i in range(25):
                log.append(_make_entry(subject_id=f"u{n}-{i}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(log) == 200
        assert log.verify_chain() == (True, None)


# ---------------------------------------------------------------------------
# 7. Bounded retention
# ---------------------------------------------------------------------------

class TestBoundedRetention:
    def test_unbounded_by_default(self):
        log = DecisionAuditLog()
        for i in range(50):
            log.append(_make_entry(subject_id=f"u{i}"))
        assert len(log) == 50
        assert log.evicted == 0

    def test_keeps_newest_entries(self):
        log = DecisionAuditLog(max_entries=100)
        for i in range(5000):
            log.append(_make_entry(subject_id=f"u{i}"))

        assert len(log) == 100
        assert log.evicted == 4900
        assert [e.subject_id for e in log.query()] == [f"u{i}" for i in range(4900, 5000)]

    def test_chain_valid_after_eviction(self):
        log = DecisionAuditLog(max_entries=3)
        entries = [log.append(_make_entry(subject_id=f"u{i}")) for i in range(7)]

        assert log.verify_chain() == (True, None)
        assert log.query()[0].previous_hash == entries[3].compute_hash()

    def test_tampering_detected_after_eviction(self):
        log = DecisionAuditLog(max_entries=3)
        for i in range(7):
            log.append(_make_entry(subject_id=f"u{i}"))

        log._entries[0].reason = "IsAdmin"

        valid, broken_at = log.verify_chain()
        assert valid is False
        assert broken_at in (0, 1)

    def test_export_reports_evicted_count(self):
        log = DecisionAuditLog(max_entries=2)
        for _ in range(5):
            log.append(_make_entry())
        meta = log.export_for_review()["export_metadata"]
        assert meta["entry_count"] == 2
        assert meta["evicted_count"] == 3
        assert meta["chain_integrity"] == "VALID"

    def test_bounded_chain_valid_under_threads(self):
        log = DecisionAuditLog(max_entries=50)

        def worker(n):
            for i in range(25):
                log.append(_make_entry(subject_id=f"u{n}-{i}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(log) == 50
        assert log.evicted == 150
        assert log.verify_chain() == (True, None)

    @pytest.mark.parametrize("max_entries", [0, -1])
    def test_non_positive_bound_rejected(self, max_entries):
        with pytest.raises(ValueError, match="max_entries"):
            DecisionAuditLog(max_entries=max_entries)
