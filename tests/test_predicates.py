"""
Tests for carepolicy.predicates -- the shared predicate vocabulary.
"""

import pytest

from carepolicy.cache import RequestCache
from carepolicy.errors import PolicyConfigurationError, RelationshipLookupFailed
from carepolicy.models import Role, Subject
from carepolicy.predicates import (
    PREDICATES,
    get_predicate,
    is_admin,
    is_own_patient_record,
    is_own_provider_record,
    is_pharmacy_admin,
    is_provider,
    is_self,
    provider_has_patient_access,
    register_predicate,
)
from carepolicy.relationships import InMemoryRelationshipProvider


def _store() -> InMemoryRelationshipProvider:
    store = InMemoryRelationshipProvider()
    store.add_patient("p1", "u1")
    store.add_provider("prov2", "u2")
    store.add_provider("prov3", "u3", active=False)
    store.link_provider_patient("prov2", "p1")
    store.link_provider_patient("prov3", "p1")
    store.grant_pharmacy_admin("u5", "ph1")
    return store


def _lookups() -> RequestCache:
    return RequestCache(_store())


PATIENT = Subject(id="u1", role=Role.USER)
PROVIDER = Subject(id="u2", role=Role.PROVIDER)
INACTIVE_PROVIDER = Subject(id="u3", role=Role.PROVIDER)
PHARMACY_ADMIN = Subject(id="u5", role=Role.USER)
ADMIN = Subject(id="admin1", role=Role.ADMIN)


class TestRoleAndSelf:
    def test_is_admin(self):
        assert is_admin(ADMIN, None, _lookups()) is True
        assert is_admin(PROVIDER, None, _lookups()) is False

    def test_is_self(self):
        assert is_self(PATIENT, "u1", _lookups()) is True
        assert is_self(PATIENT, "u2", _lookups()) is False

    def test_is_self_absent_attribute(self):
        assert is_self(PATIENT, None, _lookups()) is False


class TestOwnership:
    def test_own_patient_record(self):
        assert is_own_patient_record(PATIENT, "p1", _lookups()) is True
        assert is_own_patient_record(PROVIDER, "p1", _lookups()) is False

    def test_unknown_patient_is_no_match(self):
        assert is_own_patient_record(PATIENT, "p404", _lookups()) is False

    def test_absent_patient_id_skips_lookup(self):
        lookups = _lookups()
        assert is_own_patient_record(PATIENT, None, lookups) is False
        assert len(lookups) == 0

    def test_own_provider_record(self):
        assert is_own_provider_record(PROVIDER, "prov2", _lookups()) is True
        assert is_own_provider_record(PATIENT, "prov2", _lookups()) is False
        assert is_own_provider_record(PROVIDER, None, _lookups()) is False


class TestProviderAccess:
    def test_mapped_provider_has_access(self):
        assert provider_has_patient_access(PROVIDER, "p1", _lookups()) is True

    def test_unmapped_patient(self):
        assert provider_has_patient_access(PROVIDER, "p2", _lookups()) is False

    def test_subject_without_provider_record_fails_closed(self):
        assert provider_has_patient_access(PATIENT, "p1", _lookups()) is False

    def test_inactive_provider_fails_closed(self):
        assert provider_has_patient_access(INACTIVE_PROVIDER, "p1", _lookups()) is False

    def test_is_provider_is_role_independent(self):
        store = _store()
        store.add_provider("prov9", "u9")
        lookups = RequestCache(store)
        assert is_provider(Subject(id="u9", role=Role.USER), None, lookups) is True
        assert is_provider(Subject(id="u7", role=Role.PROVIDER), None, lookups) is False


class TestPharmacyAdmin:
    def test_granted_pharmacy(self):
        assert is_pharmacy_admin(PHARMACY_ADMIN, "ph1", _lookups()) is True

    def test_other_pharmacy(self):
        assert is_pharmacy_admin(PHARMACY_ADMIN, "ph2", _lookups()) is False

    def test_nullable_pharmacy_reference(self):
        assert is_pharmacy_admin(PHARMACY_ADMIN, None, _lookups()) is False


class TestLookupErrorsPropagate:
    def test_predicate_does_not_swallow_lookup_failure(self):
        class BrokenStore(InMemoryRelationshipProvider):
            def patient_owner(self, patient_id):
                raise TimeoutError("db timeout")

        with pytest.raises(RelationshipLookupFailed):
            is_own_patient_record(PATIENT, "p1", RequestCache(BrokenStore()))


class TestLibrary:
    def test_builtin_predicates_registered(self):
        assert {
            "IsAdmin",
            "AllowAll",
            "IsSelf",
            "IsOwnPatientRecord",
            "IsOwnProviderRecord",
            "ProviderHasPatientAccess",
            "IsPharmacyAdmin",
            "IsProvider",
        } <= set(PREDICATES)

    def test_default_attributes(self):
        assert get_predicate("IsSelf").default_attribute == "user_id"
        assert get_predicate("ProviderHasPatientAccess").default_attribute == "patient_id"
        assert get_predicate("IsPharmacyAdmin").default_attribute == "pharmacy_id"
        assert get_predicate("IsAdmin").reads_attribute is False

    def test_unknown_predicate(self):
        with pytest.raises(PolicyConfigurationError):
            get_predicate("IsDoctor")

    def test_duplicate_registration_rejected(self):
        with pytest.raises(PolicyConfigurationError):
            register_predicate("IsSelf", is_self, default_attribute="user_id")
