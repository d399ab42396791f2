"""
Core data models for the carepolicy authorization engine.

A check is always phrased as: *may this subject perform this action on
this resource?*  The subject is the authenticated actor, the resource is
described by its type tag plus a sparse map of foreign keys, and the
answer is a ``Decision``.

Resource attributes are identifiers only (``patient_id``, ``provider_id``,
``pharmacy_id`` ...).  The engine never sees row contents, so decisions
and their reasons cannot carry clinical data.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Mapping, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Account roles.

    A pharmacy-admin grant is **not** a role: it is a relationship fact
    resolved per pharmacy through the relationship provider.
    """

    USER = "user"
    PROVIDER = "provider"
    ADMIN = "admin"


class Action(str, enum.Enum):
    """Row-level actions, one policy per resource type and action."""

    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ResourceType(str, enum.Enum):
    """Built-in resource types.

    The registry keys policies by the string value, so additional types
    can be registered from policy files without extending this enum.
    """

    # Clinical records
    PATIENT = "Patient"
    ENCOUNTER = "Encounter"
    PRESCRIPTION = "Prescription"
    APPOINTMENT = "Appointment"
    GOAL = "Goal"

    # Commerce
    ORDER = "Order"
    ORDER_LINE_ITEM = "OrderLineItem"
    ORDER_ACTIVITY = "OrderActivity"
    PAYMENT_TRANSACTION = "PaymentTransaction"

    # Billing
    BILLING_GROUP = "BillingGroup"
    BILLING_DIAGNOSIS = "BillingDiagnosis"

    # Pharmacy
    PHARMACY_MEDICATION = "PharmacyMedication"
    PHARMACY_ADMIN = "PharmacyAdmin"
    PROVIDER_PHARMACY_LINK = "ProviderPharmacyLink"

    # Accounts and relationships
    PROVIDER = "Provider"
    PROVIDER_PATIENT_MAPPING = "ProviderPatientMapping"
    NOTIFICATION = "Notification"
    ACCESS_REQUEST = "AccessRequest"
    USER_ROLE = "UserRole"
    APP_SETTING = "AppSetting"

    # Public catalogs
    PRODUCT = "Product"
    CATEGORY = "Category"
    RESOURCE = "Resource"
    PHARMACY = "Pharmacy"


# ---------------------------------------------------------------------------
# Subject
# ---------------------------------------------------------------------------

class Subject(BaseModel):
    """The authenticated actor of a request.

    Built once per request from session data and never mutated.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(
        ...,
        min_length=1,
        description="Opaque identity of the logged-in account (auth user id).",
    )
    role: Role = Field(
        ...,
        description="Account role.  Only ``admin`` has policy-wide effect.",
    )

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


# ---------------------------------------------------------------------------
# Attributes
# ---------------------------------------------------------------------------

ResourceAttributes = Mapping[str, Any]
"""Sparse map of authorization-relevant foreign keys for one row."""


def normalize_attributes(attrs: Optional[ResourceAttributes]) -> dict[str, str]:
    """Return a plain ``str -> str`` copy of ``attrs``.

    ``None`` values are dropped, so a nullable foreign key and a missing
    key behave the same.  Everything else is converted with ``str()`` so
    UUID objects and their string forms compare equal.
    """
    if not attrs:
        return {}
    return {str(key): str(value) for key, value in attrs.items() if value is not None}


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------

class LeafOutcome(NamedTuple):
    """One evaluated predicate leaf and its result."""

    label: str
    result: bool

    def __str__(self) -> str:
        return f"{self.label}={'true' if self.result else 'false'}"


@dataclass(frozen=True)
class Decision:
    """Outcome of one authorization check.

    ``allowed`` is always False when ``error`` is set: a check that could
    not be completed is treated as a denial by every caller, while the
    error stays available for logging and for choosing a 500 over a 403.
    """

    allowed: bool
    reason: str
    error: Optional[Exception] = None
    evaluated: tuple[LeafOutcome, ...] = field(default=())

    def __post_init__(self) -> None:
        if self.error is not None and self.allowed:
            raise ValueError("A decision carrying an error cannot be allowed.")

    @property
    def denied(self) -> bool:
        return not self.allowed

    @property
    def http_status(self) -> int:
        """Status code an HTTP layer should answer with for this decision."""
        if self.error is not None:
            return 500
        return 200 if self.allowed else 403

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the boundary shape ``{allowed, reason, error}``."""
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "error": None if self.error is None else type(self.error).__name__,
        }
