"""
Policy registry -- (resource type, action) -> expression.

The registry is the declarative heart of the engine: one expression per
resource type and action, built once at process start and frozen before
the first request.  Adding a resource type means registering its four
policies here; the evaluator never changes.

Two invariants are checked by ``validate()`` at startup:

* **Completeness** -- every registered resource type has a policy for
  each of select, insert, update and delete.
* **Delete is admin-only** -- every delete policy can only be satisfied
  by ``IsAdmin``.
"""

from __future__ import annotations

import logging
from typing import Iterator, Optional, Union

from carepolicy.errors import PolicyConfigurationError, UnregisteredPolicy
from carepolicy.expressions import Expr, parse_expression
from carepolicy.models import Action

logger = logging.getLogger(__name__)

PolicyKey = tuple[str, Action]


def _coerce_resource_type(resource_type: object) -> str:
    value = getattr(resource_type, "value", resource_type)
    if not isinstance(value, str) or not value.strip():
        raise PolicyConfigurationError(
            f"Resource type must be a non-empty string, got {resource_type!r}"
        )
    return value


def _coerce_action(action: object) -> Action:
    try:
        return Action(action)
    except ValueError:
        raise PolicyConfigurationError(
            f"Unknown action {action!r}. Expected one of {[a.value for a in Action]}"
        ) from None


class PolicyRegistry:
    """In-memory policy table keyed by ``(resource_type, action)``.

    A pair can be registered once; ``replace()`` swaps an existing entry.
    After ``freeze()`` the registry rejects every write, which is what
    makes it safe to share between concurrent evaluations.
    """

    def __init__(self) -> None:
        self._policies: dict[PolicyKey, Expr] = {}
        self._frozen = False

    # -- writes --

    def _check_writable(self) -> None:
        if self._frozen:
            raise PolicyConfigurationError("Policy registry is frozen.")

    def register(
        self,
        resource_type: object,
        action: object,
        expression: Union[Expr, object],
    ) -> None:
        """Register the policy for one pair.

        Args:
            resource_type: A ``ResourceType`` or any non-empty string.
            action: An ``Action`` or its string value.
            expression: An ``Expr`` or policy-file data for one.

        Raises:
            PolicyConfigurationError: Invalid pair, duplicate pair, bad
                expression, or frozen registry.
        """
        self._check_writable()
        key = (_coerce_resource_type(resource_type), _coerce_action(action))
        if key in self._policies:
            raise PolicyConfigurationError(
                f"Policy for {key[0]}.{key[1].value} already registered. "
                "Use replace() to modify an existing policy."
            )
        self._policies[key] = parse_expression(expression)

    def register_resource(
        self,
        resource_type: object,
        *,
        select: object,
        insert: object,
        update: object,
        delete: object,
    ) -> None:
        """Register all four policies of a resource type at once."""
        for action, expression in (
            (Action.SELECT, select),
            (Action.INSERT, insert),
            (Action.UPDATE, update),
            (Action.DELETE, delete),
        ):
            self.register(resource_type, action, expression)

    def replace(self, resource_type: object, action: object, expression: object) -> None:
        """Replace an already registered policy.

        Raises:
            PolicyConfigurationError: If the pair is not registered yet.
        """
        self._check_writable()
        key = (_coerce_resource_type(resource_type), _coerce_action(action))
        if key not in self._policies:
            raise PolicyConfigurationError(
                f"Cannot replace: no policy registered for {key[0]}.{key[1].value}"
            )
        self._policies[key] = parse_expression(expression)

    def freeze(self) -> None:
        self._frozen = True
        logger.info("Policy registry frozen with %d policies", len(self._policies))

    @property
    def frozen(self) -> bool:
        return self._frozen

    # -- reads --

    def lookup(self, resource_type: object, action: object) -> Expr:
        """Return the policy for a pair.

        Raises:
            UnregisteredPolicy: If nothing is registered for the pair.
        """
        rt = getattr(resource_type, "value", resource_type)
        try:
            act = Action(action)
        except ValueError:
            raise UnregisteredPolicy(str(rt), str(getattr(action, "value", action))) from None
        expression = self._policies.get((rt, act))
        if expression is None:
            raise UnregisteredPolicy(str(rt), act.value)
        return expression

    def get(self, resource_type: object, action: object) -> Optional[Expr]:
        try:
            return self.lookup(resource_type, action)
        except UnregisteredPolicy:
            return None

    def resource_types(self) -> list[str]:
        """Sorted list of resource types with at least one policy."""
        return sorted({rt for rt, _ in self._policies})

    def actions_for(self, resource_type: object) -> list[Action]:
        rt = getattr(resource_type, "value", resource_type)
        return [action for action in Action if (rt, action) in self._policies]

    def list_actions_requiring_admin(self, resource_type: object) -> list[Action]:
        """Actions of ``resource_type`` whose policy only admins can satisfy.

        Raises:
            UnregisteredPolicy: If the resource type has no policies at all.
        """
        rt = getattr(resource_type, "value", resource_type)
        actions = self.actions_for(rt)
        if not actions:
            raise UnregisteredPolicy(str(rt), "*")
        return [a for a in actions if self._policies[(rt, a)].requires_admin()]

    # -- startup checks --

    def missing_policies(self) -> list[str]:
        """``Type.action`` names absent for registered resource types."""
        return [
            f"{rt}.{action.value}"
            for rt in self.resource_types()
            for action in Action
            if (rt, action) not in self._policies
        ]

    def delete_violations(self) -> list[str]:
        """Resource types whose delete policy is satisfiable without admin."""
        return [
            rt
            for rt in self.resource_types()
            if (rt, Action.DELETE) in self._policies
            and not self._policies[(rt, Action.DELETE)].requires_admin()
        ]

    def validate(self) -> None:
        """Run the startup checks.

        Raises:
            PolicyConfigurationError: Listing every incomplete resource type
                and every non-admin delete policy.
        """
        problems = []
        missing = self.missing_policies()
        if missing:
            problems.append(f"missing policies: {', '.join(missing)}")
        violations = self.delete_violations()
        if violations:
            problems.append(f"delete not restricted to admin: {', '.join(violations)}")
        if problems:
            raise PolicyConfigurationError("Invalid policy registry; " + "; ".join(problems))

    def __iter__(self) -> Iterator[tuple[str, Action, Expr]]:
        for (rt, action), expression in sorted(
            self._policies.items(), key=lambda item: (item[0][0], item[0][1].value)
        ):
            yield rt, action, expression

    def __len__(self) -> int:
        return len(self._policies)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple) or len(key) != 2:
            return False
        rt, action = key
        try:
            return (getattr(rt, "value", rt), Action(action)) in self._policies
        except ValueError:
            return False
