"""
Relationship facts consumed by the predicate library.

The engine never decides *how* ownership and grant data is fetched.  It
only depends on the five lookups of ``RelationshipProvider``:

* ``patient_owner``          -- patient row -> owning auth user.
* ``provider_owner``         -- provider row -> owning auth user.
* ``provider_id_for_user``   -- auth user -> their *active* provider row.
* ``provider_patient_linked``-- active provider <-> patient mapping?
* ``pharmacy_admin_linked``  -- active pharmacy-admin grant?

Implementations must be safe to call from many threads at once and must
answer from current state.  Memoization is the job of the request-scoped
``RequestCache``, never of the provider.

``InMemoryRelationshipProvider`` is the reference store used by tests,
the example walkthrough, and small deployments that load facts at boot.
"""

from __future__ import annotations

import abc
import threading
from typing import Optional


class RelationshipProvider(abc.ABC):
    """Read-only access to ownership and grant facts."""

    @abc.abstractmethod
    def patient_owner(self, patient_id: str) -> Optional[str]:
        """Return the auth user id owning the patient row, or None if unknown."""

    @abc.abstractmethod
    def provider_owner(self, provider_id: str) -> Optional[str]:
        """Return the auth user id owning the provider row, or None if unknown."""

    @abc.abstractmethod
    def provider_id_for_user(self, user_id: str) -> Optional[str]:
        """Return the active provider row of ``user_id``, or None."""

    @abc.abstractmethod
    def provider_patient_linked(self, provider_id: str, patient_id: str) -> bool:
        """Whether an active provider <-> patient mapping exists."""

    @abc.abstractmethod
    def pharmacy_admin_linked(self, user_id: str, pharmacy_id: str) -> bool:
        """Whether ``user_id`` holds an active admin grant on ``pharmacy_id``."""


# ---------------------------------------------------------------------------
# In-memory reference store
# ---------------------------------------------------------------------------

class InMemoryRelationshipProvider(RelationshipProvider):
    """Thread-safe, mutable in-process relationship store.

    Mutations (linking, revoking, deactivating) take effect for the very
    next lookup, which is what makes revocation visible to the next
    request.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._patients: dict[str, str] = {}
        self._providers: dict[str, str] = {}
        self._provider_active: dict[str, bool] = {}
        self._provider_patient: dict[tuple[str, str], bool] = {}
        self._pharmacy_admins: dict[tuple[str, str], bool] = {}

    # -- writes --

    def add_patient(self, patient_id: str, user_id: Optional[str]) -> None:
        """Register a patient row.  ``user_id`` may be None for unclaimed charts."""
        with self._lock:
            if user_id is None:
                self._patients.pop(patient_id, None)
            else:
                self._patients[patient_id] = user_id

    def add_provider(self, provider_id: str, user_id: str, active: bool = True) -> None:
        """Register a provider row owned by ``user_id``."""
        with self._lock:
            self._providers[provider_id] = user_id
            self._provider_active[provider_id] = active

    def set_provider_active(self, provider_id: str, active: bool) -> None:
        """Activate or deactivate a provider account.

        Raises:
            KeyError: If the provider is unknown.
        """
        with self._lock:
            if provider_id not in self._providers:
                raise KeyError(f"Unknown provider '{provider_id}'")
            self._provider_active[provider_id] = active

    def link_provider_patient(self, provider_id: str, patient_id: str) -> None:
        with self._lock:
            self._provider_patient[(provider_id, patient_id)] = True

    def unlink_provider_patient(self, provider_id: str, patient_id: str) -> None:
        """Deactivate a mapping; the row itself is kept."""
        with self._lock:
            if (provider_id, patient_id) in self._provider_patient:
                self._provider_patient[(provider_id, patient_id)] = False

    def grant_pharmacy_admin(self, user_id: str, pharmacy_id: str) -> None:
        with self._lock:
            self._pharmacy_admins[(user_id, pharmacy_id)] = True

    def revoke_pharmacy_admin(self, user_id: str, pharmacy_id: str) -> None:
        with self._lock:
            if (user_id, pharmacy_id) in self._pharmacy_admins:
                self._pharmacy_admins[(user_id, pharmacy_id)] = False

    # -- lookups --

    def patient_owner(self, patient_id: str) -> Optional[str]:
        with self._lock:
            return self._patients.get(patient_id)

    def provider_owner(self, provider_id: str) -> Optional[str]:
        with self._lock:
            return self._providers.get(provider_id)

    def provider_id_for_user(self, user_id: str) -> Optional[str]:
        with self._lock:
            for provider_id, owner in self._providers.items():
                if owner == user_id and self._provider_active.get(provider_id, False):
                    return provider_id
        return None

    def provider_patient_linked(self, provider_id: str, patient_id: str) -> bool:
        with self._lock:
            return self._provider_patient.get((provider_id, patient_id), False)

    def pharmacy_admin_linked(self, user_id: str, pharmacy_id: str) -> bool:
        with self._lock:
            return self._pharmacy_admins.get((user_id, pharmacy_id), False)
