"""
Error taxonomy for the carepolicy engine.

A denial is **not** an error; it is a normal ``Decision``.  The classes
below describe the cases where no trustworthy decision could be made
(``EvaluationError`` and its subclasses), where the caller asked about a
resource/action pair nobody configured (``UnregisteredPolicy``), or where
the policy set itself is malformed (``PolicyConfigurationError``).
"""

from __future__ import annotations

from typing import Optional


class PolicyError(Exception):
    """Base class for every error raised by carepolicy."""


class PolicyConfigurationError(PolicyError):
    """The policy set or its source file is malformed.

    Raised at registration or startup time so a bad deployment fails
    before serving any request.
    """


class UnregisteredPolicy(PolicyError):
    """No policy is registered for the requested resource type and action."""

    def __init__(self, resource_type: str, action: str) -> None:
        self.resource_type = resource_type
        self.action = action
        super().__init__(f"No policy registered for {resource_type}.{action}")


# ---------------------------------------------------------------------------
# Evaluation errors
# ---------------------------------------------------------------------------

class EvaluationError(PolicyError):
    """The evaluation could not be completed; the decision is forced to Denied."""

    kind = "evaluation_error"


class MissingRequiredAttribute(EvaluationError):
    """A policy leaf marked as required found its attribute absent."""

    kind = "missing_attribute"

    def __init__(self, attribute: str, resource_type: str, action: str) -> None:
        self.attribute = attribute
        self.resource_type = resource_type
        self.action = action
        super().__init__(
            f"Attribute '{attribute}' is required by {resource_type}.{action}"
        )


class RelationshipLookupFailed(EvaluationError):
    """The relationship store raised while resolving a fact."""

    kind = "lookup_failed"

    def __init__(self, lookup: str, original: Optional[BaseException] = None) -> None:
        self.lookup = lookup
        self.original = original
        detail = f": {type(original).__name__}" if original is not None else ""
        super().__init__(f"Relationship lookup '{lookup}' failed{detail}")


class Canceled(EvaluationError):
    """The caller's cancellation token fired or its deadline passed."""

    kind = "canceled"

    def __init__(self, message: str = "Evaluation canceled") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------------
# Enforcement
# ---------------------------------------------------------------------------

class AccessDenied(PermissionError):
    """Raised by ``Evaluator.require`` when a check is cleanly denied."""

    def __init__(self, resource_type: str, action: str, reason: str) -> None:
        self.resource_type = resource_type
        self.action = action
        self.reason = reason
        super().__init__(f"Access to {resource_type}.{action} denied ({reason})")
