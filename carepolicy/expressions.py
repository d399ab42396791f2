"""
Boolean policy expressions over the predicate library.

A policy is a small tree::

    Or(Pred("IsSelf"), Pred("ProviderHasPatientAccess"))

Leaves (``Pred``) name a library predicate and the attribute key it
reads.  ``Or`` stops at the first true child and ``And`` at the first
false one, left to right, so the order children are written in is the
order relationship lookups happen in.

Every evaluated leaf is recorded on the ``EvaluationScope`` so denials
can list exactly what was checked.  Labels name predicates and attribute
keys only, never attribute values.

``parse_expression`` turns the structured data found in policy files
into a tree; see ``carepolicy.config.load_policies_from_yaml``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, NamedTuple, Optional

from carepolicy.cache import RequestCache
from carepolicy.errors import PolicyConfigurationError
from carepolicy.models import LeafOutcome, Subject
from carepolicy.predicates import get_predicate


@dataclass
class EvaluationScope:
    """Inputs and trace of one tree evaluation."""

    subject: Subject
    attributes: dict[str, str]
    lookups: RequestCache
    trace: list[LeafOutcome] = field(default_factory=list)


class Outcome(NamedTuple):
    """Result of evaluating a node: value plus the leaves that satisfied it."""

    value: bool
    because: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

class Expr:
    """Base class of policy expression nodes."""

    def evaluate(self, scope: EvaluationScope) -> Outcome:
        raise NotImplementedError

    def leaves(self) -> Iterator["Pred"]:
        raise NotImplementedError

    def requires_admin(self) -> bool:
        """Whether the expression can only be true when ``IsAdmin`` is."""
        raise NotImplementedError

    def required_attributes(self) -> set[str]:
        return {leaf.attribute for leaf in self.leaves() if leaf.required}

    def to_data(self) -> Any:
        """Inverse of ``parse_expression``."""
        raise NotImplementedError


class Pred(Expr):
    """Leaf: one library predicate bound to one attribute key.

    Args:
        name: Registered predicate name, e.g. ``"IsOwnPatientRecord"``.
        attribute: Attribute key to read.  Defaults to the predicate's own
            default key; must be omitted for predicates that read nothing.
        required: If True, the evaluator rejects inputs lacking the
            attribute with ``MissingRequiredAttribute``.

    Raises:
        PolicyConfigurationError: Unknown predicate or misplaced attribute.
    """

    def __init__(
        self,
        name: str,
        attribute: Optional[str] = None,
        required: bool = False,
    ) -> None:
        spec = get_predicate(name)
        if not spec.reads_attribute:
            if attribute is not None or required:
                raise PolicyConfigurationError(
                    f"Predicate '{name}' does not read an attribute."
                )
        self.spec = spec
        self.name = name
        self.attribute = attribute or spec.default_attribute
        self.required = required

    @property
    def label(self) -> str:
        if self.attribute is None:
            return self.name
        return f"{self.name}({self.attribute})"

    def evaluate(self, scope: EvaluationScope) -> Outcome:
        value = scope.attributes.get(self.attribute) if self.attribute else None
        result = bool(self.spec.fn(scope.subject, value, scope.lookups))
        scope.trace.append(LeafOutcome(self.label, result))
        return Outcome(result, (self.name,) if result else ())

    def leaves(self) -> Iterator["Pred"]:
        yield self

    def requires_admin(self) -> bool:
        return self.name == "IsAdmin"

    def to_data(self) -> Any:
        if self.attribute is None:
            return self.name
        if self.attribute == self.spec.default_attribute and not self.required:
            return self.name
        if not self.required:
            return {self.name: self.attribute}
        return {self.name: {"attribute": self.attribute, "required": True}}

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, Pred)
            and (self.name, self.attribute, self.required)
            == (other.name, other.attribute, other.required)
        )

    def __hash__(self) -> int:
        return hash((self.name, self.attribute, self.required))

    def __repr__(self) -> str:
        suffix = ", required" if self.required else ""
        return f"{self.label}{suffix}" if self.attribute else self.name


class _Compound(Expr):
    op = ""

    def __init__(self, *children: Expr) -> None:
        if not children:
            raise PolicyConfigurationError(f"{self.op} needs at least one operand.")
        for child in children:
            if not isinstance(child, Expr):
                raise PolicyConfigurationError(
                    f"{self.op} operands must be expressions, got {child!r}"
                )
        self.children = tuple(children)

    def leaves(self) -> Iterator[Pred]:
        for child in self.children:
            yield from child.leaves()

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and self.children == other.children

    def __hash__(self) -> int:
        return hash((self.op, self.children))

    def __repr__(self) -> str:
        return f"{self.op}({', '.join(repr(c) for c in self.children)})"


class Or(_Compound):
    op = "Or"

    def evaluate(self, scope: EvaluationScope) -> Outcome:
        for child in self.children:
            outcome = child.evaluate(scope)
            if outcome.value:
                return outcome
        return Outcome(False)

    def requires_admin(self) -> bool:
        return all(child.requires_admin() for child in self.children)

    def to_data(self) -> Any:
        return {"any": [child.to_data() for child in self.children]}


class And(_Compound):
    op = "And"

    def evaluate(self, scope: EvaluationScope) -> Outcome:
        because: list[str] = []
        for child in self.children:
            outcome = child.evaluate(scope)
            if not outcome.value:
                return Outcome(False)
            because.extend(outcome.because)
        return Outcome(True, tuple(because))

    def requires_admin(self) -> bool:
        return any(child.requires_admin() for child in self.children)

    def to_data(self) -> Any:
        return {"all": [child.to_data() for child in self.children]}


class Not(Expr):
    def __init__(self, child: Expr) -> None:
        if not isinstance(child, Expr):
            raise PolicyConfigurationError(f"Not operand must be an expression, got {child!r}")
        self.child = child

    def evaluate(self, scope: EvaluationScope) -> Outcome:
        outcome = self.child.evaluate(scope)
        if outcome.value:
            return Outcome(False)
        return Outcome(True, (f"Not({self.child!r})",))

    def leaves(self) -> Iterator[Pred]:
        yield from self.child.leaves()

    def requires_admin(self) -> bool:
        return False

    def to_data(self) -> Any:
        return {"not": self.child.to_data()}

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Not) and self.child == other.child

    def __hash__(self) -> int:
        return hash(("Not", self.child))

    def __repr__(self) -> str:
        return f"Not({self.child!r})"


ADMIN_ONLY = Pred("IsAdmin")
ALLOW_ALL = Pred("AllowAll")


# ---------------------------------------------------------------------------
# Parsing structured policy data
# ---------------------------------------------------------------------------

_COMBINATORS = {"any": Or, "all": And}


def parse_expression(data: Any) -> Expr:
    """Build an expression tree from policy-file data.

    Accepted shapes::

        IsAdmin                                   # bare predicate
        {IsSelf: user_id}                         # predicate + attribute
        {IsSelf: {attribute: user_id, required: true}}
        {any: [expr, ...]}  {all: [expr, ...]}  {not: expr}

    Raises:
        PolicyConfigurationError: If ``data`` has any other shape.
    """
    if isinstance(data, Expr):
        return data
    if isinstance(data, str):
        return Pred(data)
    if not isinstance(data, dict) or len(data) != 1:
        raise PolicyConfigurationError(
            f"Expression must be a predicate name or a one-key mapping, got {data!r}"
        )

    (key, value), = data.items()
    if key in _COMBINATORS:
        if not isinstance(value, list):
            raise PolicyConfigurationError(f"'{key}' expects a list of expressions.")
        return _COMBINATORS[key](*(parse_expression(item) for item in value))
    if key == "not":
        return Not(parse_expression(value))

    if value is None:
        return Pred(key)
    if isinstance(value, str):
        return Pred(key, attribute=value)
    if isinstance(value, dict):
        unknown = set(value) - {"attribute", "required"}
        if unknown:
            raise PolicyConfigurationError(
                f"Unknown option(s) {sorted(unknown)} for predicate '{key}'."
            )
        return Pred(
            key,
            attribute=value.get("attribute"),
            required=bool(value.get("required", False)),
        )
    raise PolicyConfigurationError(f"Invalid options for predicate '{key}': {value!r}")
