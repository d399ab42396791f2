"""
Engine configuration and policy files.

Two kinds of YAML are read here:

* **Settings** -- a top-level ``engine`` mapping validated into
  ``EngineSettings``.
* **Policy files** -- a top-level ``policies`` list that adds resource
  types to the default registry (or, when explicitly allowed, replaces
  default policies).  Example::

      policies:
        - resource_type: LabResult
          actions:
            select:
              any:
                - IsOwnPatientRecord: patient_id
                - ProviderHasPatientAccess: patient_id
            insert:
              ProviderHasPatientAccess: {attribute: patient_id, required: true}
            update: IsAdmin
            delete: IsAdmin

Policy files are structured data mapped one-to-one onto expression nodes
(``any`` -> Or, ``all`` -> And, ``not`` -> Not); there is no expression
syntax to parse.  Every mistake surfaces as ``PolicyConfigurationError``
at startup.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from carepolicy.errors import PolicyConfigurationError
from carepolicy.expressions import Expr, parse_expression
from carepolicy.models import Action
from carepolicy.registry import PolicyRegistry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class EngineSettings(BaseModel):
    """Deployment settings of the authorization engine."""

    policy_files: list[Path] = Field(
        default_factory=list,
        description=(
            "YAML policy files layered over the default registry, in order.  "
            "Used to register resource types the defaults do not know."
        ),
    )
    allow_policy_overrides: bool = Field(
        default=False,
        description=(
            "Whether policy files may replace default policies.  Off by "
            "default so a file can only add, never loosen, existing rules."
        ),
    )
    validate_registry: bool = Field(
        default=True,
        description="Run the completeness and delete-is-admin-only checks at startup.",
    )
    audit_decisions: bool = Field(
        default=True,
        description="Record every decision in the hash-chained audit log.",
    )
    audit_max_entries: Optional[int] = Field(
        default=10_000,
        gt=0,
        description=(
            "Newest audit entries kept in memory; older ones are dropped and "
            "the chain re-anchored.  None keeps every entry."
        ),
    )
    evaluation_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description=(
            "Deadline applied to every evaluation made without an explicit "
            "cancellation token.  None disables the deadline."
        ),
    )
    log_level: str = Field(
        default="INFO",
        description="Level passed to configure_logging().",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        level = v.upper()
        if level not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}, got '{v}'")
        return level


def load_settings_from_yaml(path: str | Path) -> EngineSettings:
    """Load ``EngineSettings`` from the ``engine`` mapping of a YAML file.

    Relative ``policy_files`` entries are resolved against the settings
    file's directory.

    Raises:
        FileNotFoundError: If the file does not exist.
        PolicyConfigurationError: If the YAML structure is invalid.
        pydantic.ValidationError: If a setting fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or not isinstance(raw.get("engine"), dict):
        raise PolicyConfigurationError(
            "Settings file must contain a top-level 'engine' mapping."
        )

    engine = dict(raw["engine"])
    files = engine.get("policy_files") or []
    if not isinstance(files, list):
        raise PolicyConfigurationError("'policy_files' must be a list of paths.")
    engine["policy_files"] = [
        p if Path(p).is_absolute() else path.parent / p for p in files
    ]
    return EngineSettings(**engine)


def configure_logging(level: str = "INFO") -> None:
    """Install a basic stderr handler for applications and scripts."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Policy files
# ---------------------------------------------------------------------------

def load_policies_from_yaml(path: str | Path) -> list[tuple[str, Action, Expr]]:
    """Parse a policy file into ``(resource_type, action, expression)`` triples.

    Raises:
        FileNotFoundError: If the file does not exist.
        PolicyConfigurationError: If the structure or any expression is invalid.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "policies" not in raw:
        raise PolicyConfigurationError(
            "Policy file must contain a top-level 'policies' key with a list of entries."
        )
    entries = raw["policies"]
    if not isinstance(entries, list):
        raise PolicyConfigurationError("'policies' must be a list of entries.")

    triples: list[tuple[str, Action, Expr]] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise PolicyConfigurationError(f"Policy entry at index {idx} must be a mapping.")
        resource_type = entry.get("resource_type")
        actions = entry.get("actions")
        if not isinstance(resource_type, str) or not resource_type.strip():
            raise PolicyConfigurationError(
                f"Policy entry at index {idx} needs a non-empty 'resource_type'."
            )
        if not isinstance(actions, dict) or not actions:
            raise PolicyConfigurationError(
                f"Policy entry '{resource_type}' needs an 'actions' mapping."
            )
        for action_name, data in actions.items():
            try:
                action = Action(action_name)
            except ValueError:
                raise PolicyConfigurationError(
                    f"Unknown action '{action_name}' for '{resource_type}'."
                ) from None
            triples.append((resource_type, action, _parse_entry(resource_type, action, data)))

    logger.info("Loaded %d policies from %s", len(triples), path)
    return triples


def _parse_entry(resource_type: str, action: Action, data: Any) -> Expr:
    try:
        return parse_expression(data)
    except PolicyConfigurationError as exc:
        raise PolicyConfigurationError(f"{resource_type}.{action.value}: {exc}") from exc


def apply_policy_files(
    registry: PolicyRegistry,
    paths: Iterable[str | Path],
    allow_overrides: bool = False,
) -> int:
    """Register the policies of every file into ``registry``.

    Returns:
        Number of policies applied.

    Raises:
        PolicyConfigurationError: On invalid files, or on an attempt to
            replace an existing policy while overrides are not allowed.
    """
    applied = 0
    for path in paths:
        for resource_type, action, expression in load_policies_from_yaml(path):
            if (resource_type, action) in registry:
                if not allow_overrides:
                    raise PolicyConfigurationError(
                        f"{path}: policy {resource_type}.{action.value} already exists "
                        "and policy overrides are disabled."
                    )
                registry.replace(resource_type, action, expression)
                logger.warning(
                    "Policy %s.%s replaced from %s", resource_type, action.value, path
                )
            else:
                registry.register(resource_type, action, expression)
            applied += 1
    return applied
