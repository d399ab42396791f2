"""
Request-scoped memoization of relationship lookups.

A single request often checks one subject against many rows derived from
the same patient or provider (listing encounters, filtering a result
set).  ``RequestCache`` answers repeated lookups from memory for the
lifetime of *one* request and is then discarded.  It is never shared
between requests: a revoked provider-patient mapping must be visible to
the next independent request.

The cache is also the single choke point between predicates and the
relationship store, so it is where:

* store exceptions are wrapped in ``RelationshipLookupFailed``;
* the caller's ``CancellationToken`` is checked around every lookup.

Failed lookups are not memoized.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from carepolicy.errors import Canceled, RelationshipLookupFailed
from carepolicy.relationships import RelationshipProvider

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancellationToken:
    """Caller-owned cancellation signal with an optional deadline.

    The token may be cancelled from another thread; evaluation notices it
    at the next lookup boundary.
    """

    def __init__(self, deadline: Optional[float] = None) -> None:
        self._event = threading.Event()
        self.deadline = deadline  # time.monotonic() value

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def canceled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def raise_if_canceled(self) -> None:
        """Raise ``Canceled`` if the token was cancelled or its deadline passed."""
        if self.canceled:
            raise Canceled("Evaluation canceled by caller")
        if self.expired:
            raise Canceled("Evaluation deadline exceeded")


# ---------------------------------------------------------------------------
# Request cache
# ---------------------------------------------------------------------------

class RequestCache:
    """Memoizing front for a ``RelationshipProvider``, valid for one request.

    Keys are ``(lookup_name, *arguments)``.  ``hits`` and ``misses`` count
    answers served from memory and from the store.
    """

    def __init__(
        self,
        provider: RelationshipProvider,
        token: Optional[CancellationToken] = None,
    ) -> None:
        self._provider = provider
        self.token = token
        self._memo: dict[tuple[str, ...], Any] = {}
        self.hits = 0
        self.misses = 0

    def _lookup(self, name: str, fn: Callable[..., Any], *args: str) -> Any:
        key = (name, *args)
        if key in self._memo:
            self.hits += 1
            return self._memo[key]

        if self.token is not None:
            self.token.raise_if_canceled()
        try:
            value = fn(*args)
        except Exception as exc:
            logger.warning("Relationship lookup %s failed: %s", name, type(exc).__name__)
            raise RelationshipLookupFailed(name, exc) from exc
        if self.token is not None:
            self.token.raise_if_canceled()

        self.misses += 1
        self._memo[key] = value
        return value

    def patient_owner(self, patient_id: str) -> Optional[str]:
        return self._lookup("patient_owner", self._provider.patient_owner, patient_id)

    def provider_owner(self, provider_id: str) -> Optional[str]:
        return self._lookup("provider_owner", self._provider.provider_owner, provider_id)

    def provider_id_for_user(self, user_id: str) -> Optional[str]:
        return self._lookup(
            "provider_id_for_user", self._provider.provider_id_for_user, user_id
        )

    def provider_patient_linked(self, provider_id: str, patient_id: str) -> bool:
        return bool(self._lookup(
            "provider_patient_linked",
            self._provider.provider_patient_linked,
            provider_id,
            patient_id,
        ))

    def pharmacy_admin_linked(self, user_id: str, pharmacy_id: str) -> bool:
        return bool(self._lookup(
            "pharmacy_admin_linked",
            self._provider.pharmacy_admin_linked,
            user_id,
            pharmacy_id,
        ))

    def __len__(self) -> int:
        return len(self._memo)
