"""
Tests for carepolicy.access_report -- access review reports.
"""

from carepolicy.access_report import generate_access_report
from carepolicy.errors import RelationshipLookupFailed
from carepolicy.evaluator import Evaluator
from carepolicy.models import Decision, Role, Subject
from carepolicy.policies import build_default_registry
from carepolicy.relationships import InMemoryRelationshipProvider

PROVIDER = Subject(id="u2", role=Role.PROVIDER)


def _decisions():
    return [
        Decision(True, "ProviderHasPatientAccess"),
        Decision(False, "denied: ProviderHasPatientAccess(patient_id)=false"),
        Decision(
            False,
            "evaluation failed: lookup_failed",
            error=RelationshipLookupFailed("patient_owner", TimeoutError()),
        ),
    ]


class TestAccessReport:
    def test_summary_counts(self):
        report = generate_access_report(PROVIDER, "Encounter", "select", _decisions())
        d = report.to_dict()
        assert d["report_type"] == "Access Review Report"
        assert d["subject_role"] == "provider"
        assert d["summary"] == {"total": 3, "allowed": 1, "denied": 1, "errored": 1}

    def test_rows_identified_by_position(self):
        report = generate_access_report(PROVIDER, "Encounter", "select", _decisions())
        assert [row["row"] for row in report.rows] == [0, 1, 2]
        assert [row["outcome"] for row in report.rows] == ["allowed", "denied", "error"]
        assert report.rows[2]["error"] == "RelationshipLookupFailed"
        assert report.rows[0]["error"] is None

    def test_empty_batch(self):
        report = generate_access_report(PROVIDER, "Encounter", "select", [])
        assert report.total == 0
        assert report.to_dict()["summary"]["allowed"] == 0

    def test_report_from_filtered_batch(self):
        store = InMemoryRelationshipProvider()
        store.add_patient("p1", "u1")
        store.add_provider("prov2", "u2")
        store.link_provider_patient("prov2", "p1")
        evaluator = Evaluator(build_default_registry(), store)
        rows = [{"patient_id": "p1"}, {"patient_id": "p9"}]

        decisions = evaluator.filter_decisions(PROVIDER, "Encounter", "select", rows)
        report = generate_access_report(PROVIDER, "Encounter", "select", decisions)

        assert report.allowed_count == 1
        assert report.denied_count == 1
        assert "p9" not in str(report.to_dict())
