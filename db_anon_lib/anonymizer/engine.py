"""Chunked, transactional rewriting of anonymizable records.

Records are read in pages ordered by primary key, using the last key seen as
the cursor (WHERE pk > :last), so rows rewritten earlier in the pass are
never visited twice or skipped. Every page is read and written inside one
transaction: it commits when the page is done and rolls back if anything
raises.
"""

import logging
from typing import Any, Callable, List, Mapping, Optional

from faker import Faker
from sqlalchemy import func, select, update, inspect as sa_inspect
from sqlalchemy.orm import InstrumentedAttribute, Mapper, Session, sessionmaker, with_parent

from .contract import INCLUDE_DELETED, RELATIONS_KEY, RewriteSpec, implements_rewrite
from .discovery import model_identifier
from .errors import ContractError, InvalidModelError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000

# fn(records, session); returning False stops once the current chunk commits
ChunkFn = Callable[[List[Any], Session], Optional[bool]]


class AnonymizationEngine:
    """Counts, pages through and rewrites the records of one model at a time.

    Usage:
        engine = AnonymizationEngine(SessionLocal, Faker("en_US"), chunk_size=500)
        total = engine.count(User)
        engine.for_each_chunk(User, engine.anonymize_chunk)
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        faker: Faker,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.session_factory = session_factory
        self.faker = faker
        self.chunk_size = chunk_size

    def primary_key(self, model: type) -> InstrumentedAttribute:
        """Return the single primary key attribute of a mapped class."""
        mapper: Mapper = sa_inspect(model)
        if len(mapper.primary_key) != 1:
            raise InvalidModelError(
                model_identifier(model),
                f"expected a single-column primary key, found {len(mapper.primary_key)}",
            )
        prop = mapper.get_property_by_column(mapper.primary_key[0])
        return getattr(model, prop.key)

    def count(self, model: type) -> int:
        """Number of records matched by the model's anonymize condition."""
        condition = model.anonymize_condition()
        stmt = (
            select(func.count())
            .select_from(condition.order_by(None).subquery())
            .execution_options(**condition.get_execution_options())
        )
        with self.session_factory() as session:
            return session.scalar(stmt) or 0

    def for_each_chunk(
        self,
        model: type,
        fn: ChunkFn,
        chunk_size: Optional[int] = None,
        on_commit: Optional[Callable[[int], Optional[bool]]] = None,
    ) -> int:
        """Call fn once per page of records, each page in its own transaction.

        Args:
            model: Anonymizable mapped class
            fn: Called as fn(records, session) inside the page's transaction
            chunk_size: Page size, defaults to the engine's chunk_size
            on_commit: Called with the page length after the page commits;
                returning False stops paging

        Returns:
            Number of pages processed.
        """
        size = chunk_size or self.chunk_size
        pk = self.primary_key(model)
        last_key = None
        chunks = 0

        while True:
            stmt = model.anonymize_condition()
            if last_key is not None:
                stmt = stmt.where(pk > last_key)
            stmt = stmt.order_by(None).order_by(pk).limit(size)

            with self.session_factory.begin() as session:
                records = session.scalars(stmt).all()
                if not records:
                    break
                # Taken before fn runs; fn may rewrite the key itself
                last_key = getattr(records[-1], pk.key)
                keep_going = fn(records, session)

            chunks += 1
            if on_commit is not None and on_commit(len(records)) is False:
                break
            if keep_going is False or len(records) < size:
                break

        return chunks

    def rewrite(self, record: Any) -> RewriteSpec:
        """Ask a record for its anonymized values."""
        model = type(record)
        if not implements_rewrite(model):
            raise ContractError(model_identifier(model), "to_anonymize() is not implemented")

        spec = record.to_anonymize(self.faker)
        if not isinstance(spec, Mapping):
            raise ContractError(
                model_identifier(model),
                f"to_anonymize() must return a mapping, got {type(spec).__name__}",
            )
        return dict(spec)

    def apply(self, session: Session, record: Any, spec: RewriteSpec):
        """Write a rewrite to the database.

        Related rows are updated first, one UPDATE per relation. The record's
        own fields are then written with a direct UPDATE: no flush happens, so
        mapper events don't fire, and columns with an onupdate default keep
        their current value.
        """
        mapper: Mapper = sa_inspect(type(record))
        values = dict(spec)
        relations = values.pop(RELATIONS_KEY, None) or {}
        if not isinstance(relations, Mapping):
            raise ContractError(
                model_identifier(mapper.class_),
                f"{RELATIONS_KEY!r} must map relation names to field values",
            )

        for name, related_values in relations.items():
            self._update_relation(session, record, mapper, name, related_values)

        if values:
            self._update_quietly(session, record, mapper, values)

    def anonymize(self, session: Session, record: Any):
        self.apply(session, record, self.rewrite(record))

    def anonymize_chunk(self, records: List[Any], session: Session) -> int:
        """Anonymize every record of a page. Returns the number of records."""
        for record in records:
            self.anonymize(session, record)
        return len(records)

    def _check_fields(self, mapper: Mapper, values: Mapping[str, Any], owner: type):
        unknown = sorted(key for key in values if key not in mapper.column_attrs)
        if unknown:
            raise ContractError(
                model_identifier(owner),
                f"unknown field(s) for {mapper.class_.__name__}: {', '.join(unknown)}",
            )

    def _update_relation(
        self,
        session: Session,
        record: Any,
        mapper: Mapper,
        name: str,
        values: Mapping[str, Any],
    ):
        model = mapper.class_
        relationship = mapper.relationships.get(name)
        if relationship is None:
            raise ContractError(model_identifier(model), f"unknown relation {name!r}")
        if not isinstance(values, Mapping):
            raise ContractError(
                model_identifier(model),
                f"values for relation {name!r} must be a mapping",
            )
        if not values:
            return

        target = relationship.mapper.class_
        self._check_fields(relationship.mapper, values, model)
        target_pk = self.primary_key(target)

        # Keys are fetched first; MySQL rejects a subquery on the updated table
        related_keys = session.scalars(
            select(target_pk)
            .where(with_parent(record, getattr(model, name)))
            .execution_options(**{INCLUDE_DELETED: True})
        ).all()
        if not related_keys:
            return

        session.execute(
            update(target).where(target_pk.in_(related_keys)).values(**values)
        )
        logger.debug(
            "Updated %d %s rows through %s.%s",
            len(related_keys), target.__name__, model.__name__, name,
        )

    def _update_quietly(
        self,
        session: Session,
        record: Any,
        mapper: Mapper,
        values: Mapping[str, Any],
    ):
        model = mapper.class_
        self._check_fields(mapper, values, model)

        values = dict(values)
        for prop in mapper.column_attrs:
            if prop.key in values:
                continue
            if any(getattr(column, "onupdate", None) is not None for column in prop.columns):
                values[prop.key] = getattr(record, prop.key)

        pk = self.primary_key(model)
        session.execute(
            update(model).where(pk == getattr(record, pk.key)).values(**values)
        )
