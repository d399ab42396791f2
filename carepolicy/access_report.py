"""
Access Review Report Generator.

Summarizes a batch of decisions -- typically the output of
``Evaluator.filter_decisions`` over a query result -- so a reviewer can
see what a row filter hid from a user and why.  Rows are identified by
position only; the report carries predicate names and outcomes, never
attribute values.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence

from carepolicy.models import Decision, Subject


class AccessReport:
    """Structured summary of one subject's checks over a result set."""

    def __init__(
        self,
        subject_id: str,
        subject_role: str,
        resource_type: str,
        action: str,
        allowed_count: int,
        denied_count: int,
        error_count: int,
        rows: list[dict[str, Any]],
        generated_at: str,
    ) -> None:
        self.subject_id = subject_id
        self.subject_role = subject_role
        self.resource_type = resource_type
        self.action = action
        self.allowed_count = allowed_count
        self.denied_count = denied_count
        self.error_count = error_count
        self.rows = rows
        self.generated_at = generated_at

    @property
    def total(self) -> int:
        return len(self.rows)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a dictionary."""
        return {
            "report_type": "Access Review Report",
            "note": (
                "Rows are identified by position. Reasons name policy "
                "predicates only and contain no record data."
            ),
            "subject_id": self.subject_id,
            "subject_role": self.subject_role,
            "resource_type": self.resource_type,
            "action": self.action,
            "summary": {
                "total": self.total,
                "allowed": self.allowed_count,
                "denied": self.denied_count,
                "errored": self.error_count,
            },
            "rows": self.rows,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"AccessReport(subject={self.subject_id}, {self.resource_type}.{self.action}, "
            f"allowed={self.allowed_count}/{self.total})"
        )


def generate_access_report(
    subject: Subject,
    resource_type: Any,
    action: Any,
    decisions: Sequence[Decision],
) -> AccessReport:
    """Build an ``AccessReport`` from the decisions of one batch.

    Args:
        subject: The subject the batch was evaluated for.
        resource_type: Resource type of the batch.
        action: Action of the batch.
        decisions: One decision per row, in row order.

    Returns:
        An ``AccessReport`` ready for review.
    """
    rows = []
    allowed = denied = errored = 0
    for index, decision in enumerate(decisions):
        if decision.error is not None:
            outcome = "error"
            errored += 1
        elif decision.allowed:
            outcome = "allowed"
            allowed += 1
        else:
            outcome = "denied"
            denied += 1
        rows.append({
            "row": index,
            "outcome": outcome,
            "reason": decision.reason,
            "error": None if decision.error is None else type(decision.error).__name__,
        })

    return AccessReport(
        subject_id=subject.id,
        subject_role=subject.role.value,
        resource_type=str(getattr(resource_type, "value", resource_type)),
        action=str(getattr(action, "value", action)),
        allowed_count=allowed,
        denied_count=denied,
        error_count=errored,
        rows=rows,
        generated_at=datetime.now(timezone.utc).isoformat(),
    )
