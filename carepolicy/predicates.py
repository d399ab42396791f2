"""
Predicate library -- the shared vocabulary of row-level checks.

Every policy in the registry is built from the same handful of named
checks.  Each predicate has the signature::

    predicate(subject, value, lookups) -> bool

where ``value`` is the attribute the leaf is bound to (``None`` when the
row does not carry it, or when the predicate reads no attribute) and
``lookups`` is the request's ``RequestCache``.

Absence is evidence of no match: a predicate whose attribute is missing
returns False instead of raising.  Whether an attribute is *required* is
a property of the policy leaf and is checked by the evaluator before the
tree runs.

Lookup failures propagate as ``RelationshipLookupFailed``; predicates
never swallow them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from carepolicy.cache import RequestCache
from carepolicy.errors import PolicyConfigurationError
from carepolicy.models import Role, Subject

PredicateFn = Callable[[Subject, Optional[str], RequestCache], bool]


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

def is_admin(subject: Subject, value: Optional[str], lookups: RequestCache) -> bool:
    return subject.role == Role.ADMIN


def allow_all(subject: Subject, value: Optional[str], lookups: RequestCache) -> bool:
    """Public catalog reads."""
    return True


def is_self(subject: Subject, user_id: Optional[str], lookups: RequestCache) -> bool:
    """The row's ``user_id`` column is the subject itself."""
    return user_id is not None and user_id == subject.id


def is_own_patient_record(
    subject: Subject, patient_id: Optional[str], lookups: RequestCache
) -> bool:
    """The patient row referenced by the resource belongs to the subject."""
    if patient_id is None:
        return False
    owner = lookups.patient_owner(patient_id)
    return owner is not None and owner == subject.id


def is_own_provider_record(
    subject: Subject, provider_id: Optional[str], lookups: RequestCache
) -> bool:
    """The provider row referenced by the resource belongs to the subject."""
    if provider_id is None:
        return False
    owner = lookups.provider_owner(provider_id)
    return owner is not None and owner == subject.id


def provider_has_patient_access(
    subject: Subject, patient_id: Optional[str], lookups: RequestCache
) -> bool:
    """The subject's active provider record is mapped to the patient.

    A subject without an active provider record fails closed.
    """
    if patient_id is None:
        return False
    provider_id = lookups.provider_id_for_user(subject.id)
    if provider_id is None:
        return False
    return lookups.provider_patient_linked(provider_id, patient_id)


def is_pharmacy_admin(
    subject: Subject, pharmacy_id: Optional[str], lookups: RequestCache
) -> bool:
    """The subject holds an active admin grant on the referenced pharmacy.

    Many tables carry a nullable pharmacy reference; a row without one
    simply fails this clause.
    """
    if pharmacy_id is None:
        return False
    return lookups.pharmacy_admin_linked(subject.id, pharmacy_id)


def is_provider(subject: Subject, value: Optional[str], lookups: RequestCache) -> bool:
    """The subject has an active provider record, whatever its role."""
    return lookups.provider_id_for_user(subject.id) is not None


# ---------------------------------------------------------------------------
# Library
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PredicateSpec:
    """A named predicate as referenced from policy expressions.

    ``default_attribute`` is the attribute key a leaf binds to when the
    policy does not name one.  Predicates with ``default_attribute=None``
    read no attribute at all.
    """

    name: str
    fn: PredicateFn
    default_attribute: Optional[str] = None

    @property
    def reads_attribute(self) -> bool:
        return self.default_attribute is not None


PREDICATES: dict[str, PredicateSpec] = {}


def register_predicate(
    name: str,
    fn: PredicateFn,
    default_attribute: Optional[str] = None,
) -> PredicateSpec:
    """Add a predicate to the library.

    New grant types are supported by registering one predicate here and
    referencing it from the policies that need it.

    Raises:
        PolicyConfigurationError: If ``name`` is already taken.
    """
    if name in PREDICATES:
        raise PolicyConfigurationError(f"Predicate '{name}' is already registered.")
    spec = PredicateSpec(name=name, fn=fn, default_attribute=default_attribute)
    PREDICATES[name] = spec
    return spec


def get_predicate(name: str) -> PredicateSpec:
    """Return the predicate registered under ``name``.

    Raises:
        PolicyConfigurationError: If no such predicate exists.
    """
    try:
        return PREDICATES[name]
    except KeyError:
        raise PolicyConfigurationError(
            f"Unknown predicate '{name}'. Known predicates: {sorted(PREDICATES)}"
        ) from None


register_predicate("IsAdmin", is_admin)
register_predicate("AllowAll", allow_all)
register_predicate("IsSelf", is_self, default_attribute="user_id")
register_predicate("IsOwnPatientRecord", is_own_patient_record, default_attribute="patient_id")
register_predicate("IsOwnProviderRecord", is_own_provider_record, default_attribute="provider_id")
register_predicate(
    "ProviderHasPatientAccess", provider_has_patient_access, default_attribute="patient_id"
)
register_predicate("IsPharmacyAdmin", is_pharmacy_admin, default_attribute="pharmacy_id")
register_predicate("IsProvider", is_provider)
