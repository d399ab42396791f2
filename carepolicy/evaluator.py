"""
Evaluator -- the authorization decision core.

``Evaluator.evaluate(subject, resource_type, action, attrs)`` runs, in
order:

1. Registry lookup.  An unregistered pair yields a denied decision that
   carries ``UnregisteredPolicy``; it is never silently allowed, even for
   admins, and is logged as a configuration bug.
2. Admin override.  ``role == admin`` satisfies every registered policy
   without any relationship lookup.
3. Required-attribute check over the whole policy tree.
4. Tree evaluation, short-circuiting ``Or``/``And`` left to right.

**Fail closed.**  Any ``EvaluationError`` raised by a leaf (lookup
failure, cancellation) aborts the whole evaluation, even under an ``Or``
whose later clause might have passed.  The decision is then denied and
carries the error so callers can answer 500 instead of 403.

The evaluator holds no per-request state: the registry is frozen, the
cache is created per call (or per batch for ``filter_decisions``), and
the optional audit log serializes its own appends.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from carepolicy.audit import DecisionAuditLog
from carepolicy.cache import CancellationToken, RequestCache
from carepolicy.config import EngineSettings, apply_policy_files
from carepolicy.errors import (
    AccessDenied,
    EvaluationError,
    MissingRequiredAttribute,
    UnregisteredPolicy,
)
from carepolicy.expressions import EvaluationScope
from carepolicy.models import (
    Action,
    Decision,
    ResourceAttributes,
    Subject,
    normalize_attributes,
)
from carepolicy.policies import build_default_registry
from carepolicy.registry import PolicyRegistry
from carepolicy.relationships import RelationshipProvider

logger = logging.getLogger(__name__)


def _name(value: Any) -> str:
    return str(getattr(value, "value", value))


def _denial_reason(scope: EvaluationScope) -> str:
    if not scope.trace:
        return "denied: no clause satisfied"
    return "denied: " + ", ".join(str(outcome) for outcome in scope.trace)


class Evaluator:
    """Evaluate policies from a registry against a relationship provider.

    Args:
        registry: Policy table.  Should be validated and frozen.
        provider: Relationship store consulted (through a request cache)
            by the predicates.
        audit_log: Optional decision audit trail; every decision is
            recorded when given.
        timeout_seconds: Default deadline for calls made without an
            explicit cancellation token.
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        provider: RelationshipProvider,
        audit_log: Optional[DecisionAuditLog] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.registry = registry
        self.provider = provider
        self.audit_log = audit_log
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(
        cls, settings: EngineSettings, provider: RelationshipProvider
    ) -> "Evaluator":
        """Build an evaluator from ``EngineSettings``.

        Loads the default registry, layers any configured policy files on
        top, validates and freezes it.

        Raises:
            PolicyConfigurationError: Malformed policy file or invalid
                registry (when validation is enabled).
        """
        registry = build_default_registry(freeze=False)
        apply_policy_files(
            registry,
            settings.policy_files,
            allow_overrides=settings.allow_policy_overrides,
        )
        if settings.validate_registry:
            registry.validate()
        registry.freeze()
        return cls(
            registry,
            provider,
            audit_log=(
                DecisionAuditLog(max_entries=settings.audit_max_entries)
                if settings.audit_decisions
                else None
            ),
            timeout_seconds=settings.evaluation_timeout_seconds,
        )

    # -- request scoping --

    def new_cache(self, token: Optional[CancellationToken] = None) -> RequestCache:
        """Create the cache for one logical request."""
        if token is None and self.timeout_seconds is not None:
            token = CancellationToken.with_timeout(self.timeout_seconds)
        return RequestCache(self.provider, token=token)

    # -- single check --

    def evaluate(
        self,
        subject: Subject,
        resource_type: Any,
        action: Any,
        attrs: Optional[ResourceAttributes] = None,
        *,
        cache: Optional[RequestCache] = None,
        token: Optional[CancellationToken] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Decision:
        """Decide whether ``subject`` may perform ``action`` on the resource.

        Args:
            subject: The authenticated actor.
            resource_type: ``ResourceType`` or registered type name.
            action: ``Action`` or its string value.
            attrs: Foreign keys of the row (or of the proposed row for
                inserts).  ``None`` values count as absent.
            cache: Request cache to share with other checks of the same
                request.  A fresh one is created when omitted.
            token: Cancellation token.  With ``cache`` it is attached to
                the cache when the cache carries none.
            metadata: Extra context stored with the audit entry.

        Returns:
            The ``Decision``.  Never raises for evaluation-time failures.

        Raises:
            ValueError: If ``cache`` already carries a different token.
        """
        if cache is not None and token is not None:
            if cache.token is None:
                cache.token = token
            elif cache.token is not token:
                raise ValueError("Request cache already carries a different cancellation token.")
        rt_name, action_name = _name(resource_type), _name(action)
        attributes = normalize_attributes(attrs)
        decision = self._decide(subject, rt_name, action_name, attributes, cache, token)

        if decision.error is None:
            logger.debug(
                "%s.%s role=%s allowed=%s reason=%s",
                rt_name, action_name, subject.role.value, decision.allowed, decision.reason,
            )
        if self.audit_log is not None:
            self.audit_log.record(
                subject, rt_name, action_name, decision,
                attribute_keys=list(attributes), metadata=metadata,
            )
        return decision

    def _decide(
        self,
        subject: Subject,
        rt_name: str,
        action_name: str,
        attributes: dict[str, str],
        cache: Optional[RequestCache],
        token: Optional[CancellationToken],
    ) -> Decision:
        try:
            policy = self.registry.lookup(rt_name, action_name)
        except UnregisteredPolicy as exc:
            logger.error("No policy registered for %s.%s", rt_name, action_name)
            return Decision(allowed=False, reason=str(exc), error=exc)

        if subject.is_admin:
            return Decision(allowed=True, reason="IsAdmin")

        for attribute in sorted(policy.required_attributes()):
            if attribute not in attributes:
                exc = MissingRequiredAttribute(attribute, rt_name, action_name)
                logger.warning(
                    "Evaluation of %s.%s failed: %s (%s)",
                    rt_name, action_name, exc.kind, attribute,
                )
                return Decision(allowed=False, reason=f"evaluation failed: {exc.kind}", error=exc)

        scope = EvaluationScope(
            subject=subject,
            attributes=attributes,
            lookups=cache if cache is not None else self.new_cache(token),
        )
        try:
            outcome = policy.evaluate(scope)
        except EvaluationError as exc:
            logger.warning("Evaluation of %s.%s failed: %s", rt_name, action_name, exc.kind)
            return Decision(
                allowed=False,
                reason=f"evaluation failed: {exc.kind}",
                error=exc,
                evaluated=tuple(scope.trace),
            )

        if outcome.value:
            return Decision(
                allowed=True,
                reason=" AND ".join(outcome.because),
                evaluated=tuple(scope.trace),
            )
        return Decision(
            allowed=False,
            reason=_denial_reason(scope),
            evaluated=tuple(scope.trace),
        )

    # -- batch --

    def filter_decisions(
        self,
        subject: Subject,
        resource_type: Any,
        action: Any,
        rows: Iterable[Optional[ResourceAttributes]],
        *,
        token: Optional[CancellationToken] = None,
    ) -> list[Decision]:
        """Evaluate every row of a result set with one shared cache.

        Without an explicit ``token`` each row gets its own deadline of
        ``timeout_seconds``, as it would from ``evaluate``.
        """
        cache = self.new_cache(token)
        per_row_deadline = token is None and self.timeout_seconds is not None
        decisions = []
        for attrs in rows:
            if per_row_deadline:
                cache.token = CancellationToken.with_timeout(self.timeout_seconds)
            decisions.append(self.evaluate(subject, resource_type, action, attrs, cache=cache))
        return decisions

    def filter_allowed(
        self,
        subject: Subject,
        resource_type: Any,
        action: Any,
        rows: Iterable[Optional[ResourceAttributes]],
        *,
        token: Optional[CancellationToken] = None,
    ) -> list[bool]:
        """Row-by-row allow mask; element ``i`` equals ``evaluate(rows[i]).allowed``."""
        return [
            decision.allowed
            for decision in self.filter_decisions(
                subject, resource_type, action, rows, token=token
            )
        ]

    # -- enforcement --

    def require(
        self,
        subject: Subject,
        resource_type: Any,
        action: Any,
        attrs: Optional[ResourceAttributes] = None,
        **kwargs: Any,
    ) -> Decision:
        """Enforce a check; raise unless it is allowed.

        Raises:
            AccessDenied: If the check was cleanly denied.
            EvaluationError: If the check could not be completed.
            UnregisteredPolicy: If no policy exists for the pair.
        """
        decision = self.evaluate(subject, resource_type, action, attrs, **kwargs)
        if decision.error is not None:
            raise decision.error
        if not decision.allowed:
            raise AccessDenied(_name(resource_type), _name(action), decision.reason)
        return decision

    # -- introspection --

    def list_actions_requiring_admin(self, resource_type: Any) -> list[Action]:
        return self.registry.list_actions_requiring_admin(resource_type)
