"""
carepolicy -- Row-Level Authorization Decision Engine
=====================================================

A policy evaluation engine for a multi-role healthcare commerce and EMR
platform (patients, providers, pharmacy admins, system admins).  Given a
subject, a resource type with its foreign-key attributes, and an action,
it returns an allow/deny ``Decision`` with the reason, by composing a
small library of ownership and relationship predicates.

Typical use::

    from carepolicy import Evaluator, InMemoryRelationshipProvider, Subject
    from carepolicy import build_default_registry

    evaluator = Evaluator(build_default_registry(), InMemoryRelationshipProvider())
    decision = evaluator.evaluate(
        Subject(id="u1", role="user"), "Patient", "select", {"user_id": "u1"}
    )

Decisions fail closed: a check that cannot be completed is denied and
carries the error.
"""

from carepolicy.errors import (
    AccessDenied,
    Canceled,
    EvaluationError,
    MissingRequiredAttribute,
    PolicyConfigurationError,
    PolicyError,
    RelationshipLookupFailed,
    UnregisteredPolicy,
)
from carepolicy.models import Action, Decision, ResourceType, Role, Subject
from carepolicy.cache import CancellationToken, RequestCache
from carepolicy.relationships import InMemoryRelationshipProvider, RelationshipProvider
from carepolicy.expressions import ADMIN_ONLY, ALLOW_ALL, And, Not, Or, Pred
from carepolicy.registry import PolicyRegistry
from carepolicy.policies import build_default_registry
from carepolicy.config import EngineSettings
from carepolicy.evaluator import Evaluator

__version__ = "0.1.0"

__all__ = [
    "ADMIN_ONLY",
    "ALLOW_ALL",
    "AccessDenied",
    "Action",
    "And",
    "Canceled",
    "CancellationToken",
    "Decision",
    "EngineSettings",
    "EvaluationError",
    "Evaluator",
    "InMemoryRelationshipProvider",
    "MissingRequiredAttribute",
    "Not",
    "Or",
    "PolicyConfigurationError",
    "PolicyError",
    "PolicyRegistry",
    "Pred",
    "RelationshipLookupFailed",
    "RelationshipProvider",
    "RequestCache",
    "ResourceType",
    "Role",
    "Subject",
    "UnregisteredPolicy",
    "build_default_registry",
]
