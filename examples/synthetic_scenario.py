"""
Synthetic Scenario: Row-Level Access Walkthrough
================================================

This script walks through the carepolicy engine with entirely synthetic
identifiers.  No real patient data, PHI, or PII is used.

The scenario models a small practice: one patient account, one provider,
a pharmacy admin, and a system admin.

Steps demonstrated:
  1. Load engine settings and extra policy files from YAML
  2. Seed the relationship store
  3. Patient reads their own chart
  4. Provider is denied, then granted through a care-team mapping
  5. Delete is refused to everyone but admins
  6. A failing relationship store denies with an error
  7. Filter a result set and produce an access review report
  8. Export the decision audit log

Usage:
    python -m examples.synthetic_scenario
    # or: python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from carepolicy.access_report import generate_access_report
from carepolicy.config import configure_logging, load_settings_from_yaml
from carepolicy.evaluator import Evaluator
from carepolicy.models import Action, ResourceType, Role, Subject
from carepolicy.relationships import InMemoryRelationshipProvider


class UnreachableStore(InMemoryRelationshipProvider):
    """Relationship store whose database is down."""

    def provider_id_for_user(self, user_id):
        raise ConnectionError("synthetic outage")

    def patient_owner(self, patient_id):
        raise ConnectionError("synthetic outage")


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _show(label: str, decision) -> None:
    print(f"{label}: {json.dumps(decision.to_dict())}")


def main() -> None:
    _banner("carepolicy Synthetic Scenario: Row-Level Access")
    print("All identifiers in this demo are synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Settings and policy files
    # ------------------------------------------------------------------
    _banner("Step 1: Load Engine Settings")

    settings = load_settings_from_yaml(Path(__file__).parent / "engine.yaml")
    configure_logging(settings.log_level)
    print(f"Policy files: {[p.name for p in settings.policy_files]}")

    # ------------------------------------------------------------------
    # Step 2: Relationship store
    # ------------------------------------------------------------------
    _banner("Step 2: Seed Relationship Store")

    store = InMemoryRelationshipProvider()
    store.add_patient("p1", "u1")
    store.add_patient("p2", "u4")
    store.add_provider("prov2", "u2")
    store.grant_pharmacy_admin("u5", "ph1")

    evaluator = Evaluator.from_settings(settings, store)
    print(f"Registered resource types: {len(evaluator.registry.resource_types())}")
    print(f"Registered policies: {len(evaluator.registry)}")

    patient = Subject(id="u1", role=Role.USER)
    provider = Subject(id="u2", role=Role.PROVIDER)
    pharmacy_admin = Subject(id="u5", role=Role.USER)
    admin = Subject(id="admin1", role=Role.ADMIN)
    chart = {"patient_id": "p1", "user_id": "u1"}

    # ------------------------------------------------------------------
    # Step 3: Self access
    # ------------------------------------------------------------------
    _banner("Step 3: Patient Reads Own Chart")
    _show("patient select Patient", evaluator.evaluate(
        patient, ResourceType.PATIENT, Action.SELECT, chart
    ))

    # ------------------------------------------------------------------
    # Step 4: Care-team access
    # ------------------------------------------------------------------
    _banner("Step 4: Provider Access Through Care-Team Mapping")
    _show("provider before mapping", evaluator.evaluate(
        provider, ResourceType.PATIENT, Action.SELECT, chart
    ))
    store.link_provider_patient("prov2", "p1")
    _show("provider after mapping ", evaluator.evaluate(
        provider, ResourceType.PATIENT, Action.SELECT, chart
    ))
    _show("provider reads LabResult", evaluator.evaluate(
        provider, "LabResult", Action.SELECT, {"patient_id": "p1"}
    ))
    _show("pharmacy admin updates medication", evaluator.evaluate(
        pharmacy_admin, ResourceType.PHARMACY_MEDICATION, Action.UPDATE, {"pharmacy_id": "ph1"}
    ))

    # ------------------------------------------------------------------
    # Step 5: Delete
    # ------------------------------------------------------------------
    _banner("Step 5: Delete Is Admin-Only")
    _show("patient delete Patient", evaluator.evaluate(
        patient, ResourceType.PATIENT, Action.DELETE, chart
    ))
    _show("admin delete Patient  ", evaluator.evaluate(
        admin, ResourceType.PATIENT, Action.DELETE, {}
    ))
    print(
        "Admin-only actions on PaymentTransaction: "
        f"{[a.value for a in evaluator.list_actions_requiring_admin('PaymentTransaction')]}"
    )

    # ------------------------------------------------------------------
    # Step 6: Fail closed
    # ------------------------------------------------------------------
    _banner("Step 6: Store Outage Fails Closed")
    degraded = Evaluator(evaluator.registry, UnreachableStore())
    decision = degraded.evaluate(patient, ResourceType.ENCOUNTER, Action.SELECT, {"patient_id": "p1"})
    _show("patient select Encounter", decision)
    print(f"HTTP status to answer with: {decision.http_status}")

    # ------------------------------------------------------------------
    # Step 7: Batch filter and report
    # ------------------------------------------------------------------
    _banner("Step 7: Filter Encounters and Review")
    rows = [{"patient_id": "p1"}, {"patient_id": "p2"}, {"patient_id": "p1"}]
    decisions = evaluator.filter_decisions(provider, ResourceType.ENCOUNTER, Action.SELECT, rows)
    report = generate_access_report(provider, ResourceType.ENCOUNTER, Action.SELECT, decisions)
    print(json.dumps(report.to_dict(), indent=2))

    # ------------------------------------------------------------------
    # Step 8: Audit export
    # ------------------------------------------------------------------
    _banner("Step 8: Decision Audit Export")
    export = evaluator.audit_log.export_for_review()
    print(json.dumps(export["export_metadata"], indent=2))

    valid, broken_at = evaluator.audit_log.verify_chain()
    print(f"\nFull chain verification: valid={valid}, broken_at={broken_at}")

    _banner("Scenario Complete")


if __name__ == "__main__":
    main()
