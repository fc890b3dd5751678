"""The contract a mapped class implements to take part in anonymization.

A model opts in by inheriting Anonymizable next to its declarative base and
overriding to_anonymize():

    class User(Base, Anonymizable, SoftDeleteMixin):
        __tablename__ = "users"
        ...

        def to_anonymize(self, faker):
            return {
                "name": faker.name(),
                "email": faker.unique.email(),
                "relations": {"addresses": {"street": faker.street_address()}},
            }

The optional "relations" entry maps relationship names to field values that
are applied to every related row before the model's own fields are written.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from faker import Faker
from sqlalchemy import DateTime, Select, event, select
from sqlalchemy.orm import Mapped, ORMExecuteState, mapped_column, with_loader_criteria

RELATIONS_KEY = "relations"

# Execution option that lifts the soft-delete filter for one statement
INCLUDE_DELETED = "include_deleted"

RewriteSpec = Dict[str, Any]


class Anonymizable:
    """Marks a mapped class as holding data that must be anonymized."""

    # Anonymize soft-deleted rows as well (only meaningful with SoftDeleteMixin)
    anonymize_soft_deleted = True

    @classmethod
    def anonymize_condition(cls) -> Select:
        """Statement selecting every row eligible for anonymization."""
        stmt = select(cls)
        if issubclass(cls, SoftDeleteMixin) and cls.anonymize_soft_deleted:
            stmt = stmt.execution_options(**{INCLUDE_DELETED: True})
        return stmt

    def to_anonymize(self, faker: Faker) -> RewriteSpec:
        raise NotImplementedError(
            f"Please implement to_anonymize() on {type(self).__name__}."
        )


def implements_rewrite(cls: type) -> bool:
    """Check that a class overrides Anonymizable.to_anonymize()."""
    return getattr(cls, "to_anonymize", None) is not Anonymizable.to_anonymize


class SoftDeleteMixin:
    """Rows are flagged deleted through deleted_at instead of being removed."""

    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True, default=None
    )


def _hide_soft_deleted(state: ORMExecuteState):
    if (
        state.is_select
        and not state.is_column_load
        and not state.is_relationship_load
        and not state.execution_options.get(INCLUDE_DELETED, False)
    ):
        state.statement = state.statement.options(
            with_loader_criteria(
                SoftDeleteMixin,
                lambda cls: cls.deleted_at.is_(None),
                include_aliases=True,
            )
        )


def install_soft_delete_filter(session_factory):
    """Hide soft-deleted rows from ORM SELECTs issued through session_factory.

    Statements executed with the include_deleted execution option see every
    row. UPDATE and DELETE statements are left alone.
    """
    if not event.contains(session_factory, "do_orm_execute", _hide_soft_deleted):
        event.listen(session_factory, "do_orm_execute", _hide_soft_deleted)
    return session_factory
