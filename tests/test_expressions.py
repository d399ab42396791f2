"""
Tests for carepolicy.expressions -- tree evaluation and policy-file parsing.
"""

import pytest

from carepolicy.cache import RequestCache
from carepolicy.errors import PolicyConfigurationError
from carepolicy.expressions import (
    ADMIN_ONLY,
    ALLOW_ALL,
    And,
    EvaluationScope,
    Not,
    Or,
    Pred,
    parse_expression,
)
from carepolicy.models import Role, Subject
from carepolicy.relationships import InMemoryRelationshipProvider


class RecordingProvider(InMemoryRelationshipProvider):
    """Records the name of every lookup that reaches the store."""

    def __init__(self) -> None:
        super().__init__()
        self.seen = []

    def patient_owner(self, patient_id):
        self.seen.append("patient_owner")
        return super().patient_owner(patient_id)

    def provider_id_for_user(self, user_id):
        self.seen.append("provider_id_for_user")
        return super().provider_id_for_user(user_id)


def _scope(subject, attributes, store=None):
    store = store if store is not None else InMemoryRelationshipProvider()
    return EvaluationScope(
        subject=subject,
        attributes=attributes,
        lookups=RequestCache(store),
    )


USER = Subject(id="u1", role=Role.USER)


# ---------------------------------------------------------------------------
# 1. Leaves
# ---------------------------------------------------------------------------

class TestPred:
    def test_default_attribute_and_label(self):
        leaf = Pred("IsOwnPatientRecord")
        assert leaf.attribute == "patient_id"
        assert leaf.label == "IsOwnPatientRecord(patient_id)"

    def test_attribute_override(self):
        leaf = Pred("IsSelf", attribute="owner_id")
        scope = _scope(USER, {"owner_id": "u1"})
        assert leaf.evaluate(scope).value is True
        assert scope.trace[0].label == "IsSelf(owner_id)"

    def test_attribute_on_attributeless_predicate_rejected(self):
        with pytest.raises(PolicyConfigurationError):
            Pred("IsAdmin", attribute="user_id")

    def test_required_on_attributeless_predicate_rejected(self):
        with pytest.raises(PolicyConfigurationError):
            Pred("AllowAll", required=True)

    def test_unknown_predicate_rejected(self):
        with pytest.raises(PolicyConfigurationError):
            Pred("IsNurse")

    def test_trace_records_result(self):
        scope = _scope(USER, {"user_id": "u2"})
        outcome = Pred("IsSelf").evaluate(scope)
        assert outcome.value is False
        assert outcome.because == ()
        assert [str(o) for o in scope.trace] == ["IsSelf(user_id)=false"]

    def test_equality(self):
        assert Pred("IsSelf") == Pred("IsSelf", attribute="user_id")
        assert Pred("IsSelf") != Pred("IsSelf", required=True)
        assert len({Pred("IsSelf"), Pred("IsSelf")}) == 1


# ---------------------------------------------------------------------------
# 2. Combinators
# ---------------------------------------------------------------------------

class TestShortCircuit:
    def test_or_stops_at_first_true(self):
        store = RecordingProvider()
        scope = _scope(USER, {"user_id": "u1", "patient_id": "p1"}, store)
        outcome = Or(Pred("IsSelf"), Pred("IsOwnPatientRecord")).evaluate(scope)
        assert outcome.value is True
        assert outcome.because == ("IsSelf",)
        assert store.seen == []
        assert len(scope.trace) == 1

    def test_or_evaluates_left_to_right(self):
        store = RecordingProvider()
        scope = _scope(USER, {"patient_id": "p1"}, store)
        Or(Pred("ProviderHasPatientAccess"), Pred("IsOwnPatientRecord")).evaluate(scope)
        assert store.seen == ["provider_id_for_user", "patient_owner"]

    def test_and_stops_at_first_false(self):
        store = RecordingProvider()
        scope = _scope(USER, {"user_id": "u2", "patient_id": "p1"}, store)
        outcome = And(Pred("IsSelf"), Pred("IsOwnPatientRecord")).evaluate(scope)
        assert outcome.value is False
        assert store.seen == []

    def test_and_merges_reasons(self):
        store = InMemoryRelationshipProvider()
        store.add_patient("p1", "u1")
        scope = _scope(USER, {"user_id": "u1", "patient_id": "p1"}, store)
        outcome = And(Pred("IsSelf"), Pred("IsOwnPatientRecord")).evaluate(scope)
        assert outcome.value is True
        assert outcome.because == ("IsSelf", "IsOwnPatientRecord")

    def test_not(self):
        scope = _scope(USER, {"user_id": "u2"})
        outcome = Not(Pred("IsSelf")).evaluate(scope)
        assert outcome.value is True
        assert outcome.because == ("Not(IsSelf(user_id))",)

    def test_empty_combinator_rejected(self):
        with pytest.raises(PolicyConfigurationError):
            Or()

    def test_non_expression_operand_rejected(self):
        with pytest.raises(PolicyConfigurationError):
            And(Pred("IsSelf"), "IsAdmin")


# ---------------------------------------------------------------------------
# 3. Structural queries
# ---------------------------------------------------------------------------

class TestStructure:
    def test_requires_admin(self):
        assert ADMIN_ONLY.requires_admin() is True
        assert ALLOW_ALL.requires_admin() is False
        assert Or(ADMIN_ONLY, ADMIN_ONLY).requires_admin() is True
        assert Or(ADMIN_ONLY, Pred("IsSelf")).requires_admin() is False
        assert And(ADMIN_ONLY, Pred("IsSelf")).requires_admin() is True
        assert Not(Pred("IsSelf")).requires_admin() is False

    def test_required_attributes(self):
        expr = Or(
            Pred("IsOwnPatientRecord", required=True),
            And(Pred("IsSelf"), Pred("IsPharmacyAdmin", required=True)),
        )
        assert expr.required_attributes() == {"patient_id", "pharmacy_id"}

    def test_leaves_in_order(self):
        expr = Or(Pred("IsSelf"), Not(Pred("IsProvider")))
        assert [leaf.name for leaf in expr.leaves()] == ["IsSelf", "IsProvider"]


# ---------------------------------------------------------------------------
# 4. Parsing
# ---------------------------------------------------------------------------

class TestParseExpression:
    def test_bare_name(self):
        assert parse_expression("IsAdmin") == ADMIN_ONLY

    def test_predicate_with_attribute(self):
        assert parse_expression({"IsSelf": "owner_id"}) == Pred("IsSelf", attribute="owner_id")

    def test_predicate_with_options(self):
        parsed = parse_expression(
            {"ProviderHasPatientAccess": {"attribute": "patient_id", "required": True}}
        )
        assert parsed == Pred("ProviderHasPatientAccess", required=True)

    def test_nested_combinators(self):
        parsed = parse_expression({
            "any": [
                "IsOwnPatientRecord",
                {"all": ["IsOwnProviderRecord", {"not": "IsPharmacyAdmin"}]},
            ]
        })
        assert parsed == Or(
            Pred("IsOwnPatientRecord"),
            And(Pred("IsOwnProviderRecord"), Not(Pred("IsPharmacyAdmin"))),
        )

    def test_to_data_inverts_parse(self):
        data = {
            "any": [
                "IsSelf",
                {"IsOwnPatientRecord": "subject_patient_id"},
                {"ProviderHasPatientAccess": {"attribute": "patient_id", "required": True}},
            ]
        }
        assert parse_expression(data).to_data() == data

    @pytest.mark.parametrize("bad", [
        42,
        [],
        {"any": "IsSelf"},
        {"IsSelf": "user_id", "IsAdmin": None},
        {"IsSelf": {"attr": "user_id"}},
        {"IsSelf": 3},
    ])
    def test_malformed_data_rejected(self, bad):
        with pytest.raises(PolicyConfigurationError):
            parse_expression(bad)
