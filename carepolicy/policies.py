"""
Default policy set for the healthcare commerce / EMR platform.

One entry per resource type, four actions each.  ``IsAdmin`` is not
repeated in every expression: the evaluator applies the admin override
before any policy runs, so the expressions below describe what
*non-admin* subjects may do.  Delete is admin-only everywhere.

Chained ownership (billing diagnosis -> billing group -> encounter ->
provider, order line item -> order -> user) is resolved by the caller,
who passes the already-dereferenced keys in the attribute map.
"""

from __future__ import annotations

import logging
from typing import Any

from carepolicy.expressions import ADMIN_ONLY, ALLOW_ALL, And, Expr, Or, Pred
from carepolicy.models import ResourceType as RT
from carepolicy.registry import PolicyRegistry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Reusable clauses
# ---------------------------------------------------------------------------

SELF = Pred("IsSelf")
OWN_PATIENT = Pred("IsOwnPatientRecord")
OWN_PROVIDER = Pred("IsOwnProviderRecord")
CARE_TEAM = Pred("ProviderHasPatientAccess")
PHARMACY_ADMIN = Pred("IsPharmacyAdmin")
ANY_PROVIDER = Pred("IsProvider")

# Provider acting on a row that is both theirs and about a patient they
# are mapped to.
TREATING_PROVIDER = And(
    Pred("IsOwnProviderRecord", required=True),
    Pred("ProviderHasPatientAccess", required=True),
)


def _catalog() -> dict[str, Expr]:
    """Public read, admin write."""
    return {"select": ALLOW_ALL, "insert": ADMIN_ONLY, "update": ADMIN_ONLY, "delete": ADMIN_ONLY}


def _admin_only() -> dict[str, Expr]:
    return {"select": ADMIN_ONLY, "insert": ADMIN_ONLY, "update": ADMIN_ONLY, "delete": ADMIN_ONLY}


def _owned_by_user(insert: Expr = SELF) -> dict[str, Expr]:
    """Rows keyed by ``user_id`` (orders, notifications...)."""
    return {"select": SELF, "insert": insert, "update": SELF, "delete": ADMIN_ONLY}


# ---------------------------------------------------------------------------
# Default table
# ---------------------------------------------------------------------------

DEFAULT_POLICIES: dict[RT, dict[str, Any]] = {
    # -- clinical records --
    RT.PATIENT: {
        "select": Or(SELF, CARE_TEAM),
        "insert": SELF,
        "update": Or(SELF, CARE_TEAM),
        "delete": ADMIN_ONLY,
    },
    # Patients read their encounters but cannot create them.
    RT.ENCOUNTER: {
        "select": Or(CARE_TEAM, OWN_PATIENT),
        "insert": Pred("ProviderHasPatientAccess", required=True),
        "update": Or(CARE_TEAM, OWN_PATIENT),
        "delete": ADMIN_ONLY,
    },
    RT.PRESCRIPTION: {
        "select": Or(CARE_TEAM, OWN_PATIENT, OWN_PROVIDER, PHARMACY_ADMIN),
        "insert": TREATING_PROVIDER,
        "update": Or(And(OWN_PROVIDER, CARE_TEAM), PHARMACY_ADMIN),
        "delete": ADMIN_ONLY,
    },
    # Unlike encounters, patients may book their own appointments.
    RT.APPOINTMENT: {
        "select": Or(OWN_PATIENT, CARE_TEAM, OWN_PROVIDER),
        "insert": Or(
            Pred("IsOwnPatientRecord", required=True),
            Pred("ProviderHasPatientAccess", required=True),
        ),
        "update": Or(OWN_PATIENT, CARE_TEAM, OWN_PROVIDER),
        "delete": ADMIN_ONLY,
    },
    RT.GOAL: {
        "select": Or(OWN_PATIENT, CARE_TEAM),
        "insert": Or(OWN_PATIENT, CARE_TEAM),
        "update": Or(OWN_PATIENT, CARE_TEAM),
        "delete": ADMIN_ONLY,
    },
    # -- commerce --
    RT.ORDER: _owned_by_user(insert=Pred("IsSelf", required=True)),
    RT.ORDER_LINE_ITEM: _owned_by_user(insert=Pred("IsSelf", required=True)),
    RT.ORDER_ACTIVITY: {
        "select": SELF,
        "insert": ADMIN_ONLY,
        "update": ADMIN_ONLY,
        "delete": ADMIN_ONLY,
    },
    RT.PAYMENT_TRANSACTION: {
        "select": Or(OWN_PATIENT, OWN_PROVIDER, CARE_TEAM, PHARMACY_ADMIN),
        "insert": TREATING_PROVIDER,
        "update": Or(And(OWN_PROVIDER, CARE_TEAM), PHARMACY_ADMIN),
        "delete": ADMIN_ONLY,
    },
    # -- billing --
    RT.BILLING_GROUP: {
        "select": Or(OWN_PROVIDER, CARE_TEAM, OWN_PATIENT),
        "insert": Pred("IsOwnProviderRecord", required=True),
        "update": OWN_PROVIDER,
        "delete": ADMIN_ONLY,
    },
    # -- pharmacy --
    RT.PHARMACY_MEDICATION: {
        "select": Or(ANY_PROVIDER, PHARMACY_ADMIN),
        "insert": Pred("IsPharmacyAdmin", required=True),
        "update": PHARMACY_ADMIN,
        "delete": ADMIN_ONLY,
    },
    RT.PHARMACY_ADMIN: {
        "select": SELF,
        "insert": ADMIN_ONLY,
        "update": ADMIN_ONLY,
        "delete": ADMIN_ONLY,
    },
    RT.PROVIDER_PHARMACY_LINK: {
        "select": Or(OWN_PROVIDER, PHARMACY_ADMIN),
        "insert": PHARMACY_ADMIN,
        "update": PHARMACY_ADMIN,
        "delete": ADMIN_ONLY,
    },
    # -- accounts and relationships --
    RT.PROVIDER: {
        "select": Or(OWN_PROVIDER, SELF),
        "insert": Pred("IsSelf", required=True),
        "update": Or(OWN_PROVIDER, SELF),
        "delete": ADMIN_ONLY,
    },
    RT.PROVIDER_PATIENT_MAPPING: {
        "select": Or(OWN_PROVIDER, OWN_PATIENT),
        "insert": ADMIN_ONLY,
        "update": ADMIN_ONLY,
        "delete": ADMIN_ONLY,
    },
    RT.NOTIFICATION: _owned_by_user(),
    RT.ACCESS_REQUEST: {
        "select": SELF,
        "insert": Pred("IsSelf", required=True),
        "update": ADMIN_ONLY,
        "delete": ADMIN_ONLY,
    },
    RT.USER_ROLE: {
        "select": SELF,
        "insert": ADMIN_ONLY,
        "update": ADMIN_ONLY,
        "delete": ADMIN_ONLY,
    },
    RT.APP_SETTING: _admin_only(),
    # -- public catalogs --
    RT.PRODUCT: _catalog(),
    RT.CATEGORY: _catalog(),
    RT.RESOURCE: _catalog(),
    RT.PHARMACY: _catalog(),
}

# Billing diagnoses carry the parent group's provider/patient keys.
DEFAULT_POLICIES[RT.BILLING_DIAGNOSIS] = DEFAULT_POLICIES[RT.BILLING_GROUP]


def build_default_registry(freeze: bool = True) -> PolicyRegistry:
    """Build, validate and (by default) freeze the default registry.

    Pass ``freeze=False`` to layer extra policies from files before the
    registry is frozen.

    Raises:
        PolicyConfigurationError: If the default table is incomplete.
    """
    registry = PolicyRegistry()
    for resource_type, actions in DEFAULT_POLICIES.items():
        registry.register_resource(resource_type, **actions)
    registry.validate()
    logger.info(
        "Default policy registry built: %d resource types, %d policies",
        len(registry.resource_types()),
        len(registry),
    )
    if freeze:
        registry.freeze()
    return registry
