"""
SQL-backed relationship provider.

Reads ownership and grant facts straight from the relational tables the
application already maintains.  Every lookup checks out its own pooled
connection, so one provider instance is safe to share across threads.

The table definitions below carry only the columns authorization needs;
application tables may have many more.
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import Boolean, Column, MetaData, Select, String, Table, and_, select
from sqlalchemy.engine import Engine

from carepolicy.relationships import RelationshipProvider


relationship_metadata = MetaData()

patients = Table(
    "patients",
    relationship_metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(64), nullable=True),
)

providers = Table(
    "providers",
    relationship_metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(64), nullable=True, unique=True),
    Column("is_active", Boolean, nullable=False, default=True),
)

provider_patient_mappings = Table(
    "provider_patient_mappings",
    relationship_metadata,
    Column("provider_id", String(64), primary_key=True),
    Column("patient_id", String(64), primary_key=True),
    Column("is_active", Boolean, nullable=False, default=True),
)

pharmacy_admins = Table(
    "pharmacy_admins",
    relationship_metadata,
    Column("user_id", String(64), primary_key=True),
    Column("pharmacy_id", String(64), primary_key=True),
    Column("is_active", Boolean, nullable=False, default=True),
)


class SqlRelationshipProvider(RelationshipProvider):
    """Relationship lookups over a SQLAlchemy engine.

    Database errors are not caught here; the request cache wraps them in
    ``RelationshipLookupFailed`` so the evaluation fails closed.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _scalar(self, statement: Select) -> Any:
        with self._engine.connect() as conn:
            return conn.execute(statement).scalar()

    def patient_owner(self, patient_id: str) -> Optional[str]:
        return self._scalar(
            select(patients.c.user_id).where(patients.c.id == patient_id)
        )

    def provider_owner(self, provider_id: str) -> Optional[str]:
        return self._scalar(
            select(providers.c.user_id).where(providers.c.id == provider_id)
        )

    def provider_id_for_user(self, user_id: str) -> Optional[str]:
        return self._scalar(
            select(providers.c.id)
            .where(and_(providers.c.user_id == user_id, providers.c.is_active.is_(True)))
            .limit(1)
        )

    def provider_patient_linked(self, provider_id: str, patient_id: str) -> bool:
        found = self._scalar(
            select(provider_patient_mappings.c.provider_id)
            .where(
                and_(
                    provider_patient_mappings.c.provider_id == provider_id,
                    provider_patient_mappings.c.patient_id == patient_id,
                    provider_patient_mappings.c.is_active.is_(True),
                )
            )
            .limit(1)
        )
        return found is not None

    def pharmacy_admin_linked(self, user_id: str, pharmacy_id: str) -> bool:
        found = self._scalar(
            select(pharmacy_admins.c.user_id)
            .where(
                and_(
                    pharmacy_admins.c.user_id == user_id,
                    pharmacy_admins.c.pharmacy_id == pharmacy_id,
                    pharmacy_admins.c.is_active.is_(True),
                )
            )
            .limit(1)
        )
        return found is not None
