"""Tests for counting, chunked paging and record rewrites."""

import pytest
from sqlalchemy import event, select

from db_anon_lib.anonymizer.contract import INCLUDE_DELETED
from db_anon_lib.anonymizer.engine import AnonymizationEngine
from db_anon_lib.anonymizer.errors import ContractError

from sample_models import (
    CREATED,
    Invoice,
    Lead,
    Legacy,
    Order,
    Payment,
    Post,
    Ticket,
    User,
    add_rows,
    add_users,
)


def all_rows(session_factory, model):
    """Every row of a model, soft-deleted ones included, ordered by id."""
    with session_factory() as session:
        stmt = select(model).order_by(model.id).execution_options(**{INCLUDE_DELETED: True})
        return session.scalars(stmt).all()


class TestCount:
    """Test record counting."""

    def test_counts_all_rows(self, engine, session_factory):
        add_rows(session_factory, Order, 7, "customer_name", "customer")
        assert engine.count(Order) == 7

    def test_empty_table(self, engine):
        assert engine.count(Invoice) == 0

    def test_includes_soft_deleted(self, engine, session_factory):
        """Soft-deleted rows still hold personal data and are counted."""
        add_users(session_factory, 5, deleted={2, 4})
        assert engine.count(User) == 5

    def test_soft_delete_filter_hides_rows_by_default(self, session_factory):
        add_users(session_factory, 5, deleted={2, 4})
        with session_factory() as session:
            users = session.scalars(select(User).order_by(User.id)).all()
        assert [u.id for u in users] == [1, 3, 5]
        assert len(all_rows(session_factory, User)) == 5

    def test_respects_custom_condition(self, engine, session_factory):
        add_rows(session_factory, Lead, 4, "phone", "555")
        with session_factory.begin() as session:
            session.get(Lead, 1).is_anonymized = True
        assert engine.count(Lead) == 3

    def test_soft_deleted_rows_can_be_left_out(self, engine, session_factory, monkeypatch):
        add_users(session_factory, 5, deleted={2, 4})
        monkeypatch.setattr(User, "anonymize_soft_deleted", False)

        assert engine.count(User) == 3
        pages = []
        engine.for_each_chunk(User, lambda records, session: pages.extend(r.id for r in records))
        assert pages == [1, 3, 5]


class TestForEachChunk:
    """Test cursor-based paging."""

    def test_visits_every_record_once(self, engine, session_factory):
        add_rows(session_factory, Order, 25, "customer_name", "customer")
        seen = []
        chunks = engine.for_each_chunk(Order, lambda records, session: seen.extend(r.id for r in records))
        assert chunks == 3
        assert seen == list(range(1, 26))

    def test_exact_multiple_of_chunk_size(self, engine, session_factory):
        add_rows(session_factory, Order, 20, "customer_name", "customer")
        sizes = []
        chunks = engine.for_each_chunk(Order, lambda records, session: sizes.append(len(records)))
        assert chunks == 2
        assert sizes == [10, 10]

    def test_zero_records_means_zero_chunks(self, engine):
        calls = []
        chunks = engine.for_each_chunk(Invoice, lambda records, session: calls.append(records))
        assert chunks == 0
        assert calls == []

    def test_chunk_size_override(self, engine, session_factory):
        add_rows(session_factory, Order, 9, "customer_name", "customer")
        chunks = engine.for_each_chunk(Order, lambda records, session: None, chunk_size=4)
        assert chunks == 3

    def test_rows_leaving_the_condition_are_not_skipped(self, engine, session_factory):
        """Rewritten rows drop out of the condition; offset paging would skip rows."""
        add_rows(session_factory, Lead, 35, "phone", "555")
        seen = []

        def rewrite(records, session):
            seen.extend(r.id for r in records)
            engine.anonymize_chunk(records, session)

        chunks = engine.for_each_chunk(Lead, rewrite)
        assert chunks == 4
        assert seen == list(range(1, 36))
        assert all(lead.is_anonymized for lead in all_rows(session_factory, Lead))

    def test_returning_false_stops_after_chunk(self, engine, session_factory):
        add_rows(session_factory, Order, 25, "customer_name", "customer")
        chunks = engine.for_each_chunk(Order, lambda records, session: False)
        assert chunks == 1

    def test_on_commit_receives_chunk_sizes(self, engine, session_factory):
        add_rows(session_factory, Order, 23, "customer_name", "customer")
        committed = []
        engine.for_each_chunk(Order, lambda records, session: None, on_commit=committed.append)
        assert committed == [10, 10, 3]

    def test_failure_rolls_back_only_current_chunk(self, engine, session_factory, monkeypatch):
        """Earlier chunks stay committed; the failing chunk leaves no writes."""
        add_rows(session_factory, Payment, 25, "card_holder", "holder")
        monkeypatch.setattr(Payment, "fail_on_id", 15)

        with pytest.raises(RuntimeError, match="payment 15"):
            engine.for_each_chunk(Payment, engine.anonymize_chunk)

        holders = {p.id: p.card_holder for p in all_rows(session_factory, Payment)}
        assert all(holders[i] != f"holder-{i}" for i in range(1, 11))
        assert all(holders[i] == f"holder-{i}" for i in range(11, 26))

    def test_rejects_non_positive_chunk_size(self, session_factory, faker):
        with pytest.raises(ValueError):
            AnonymizationEngine(session_factory, faker, chunk_size=0)


class TestRewrite:
    """Test asking records for their rewrite."""

    def test_returns_copy_of_mapping(self, engine):
        spec = engine.rewrite(Order(id=1, customer_name="Jane"))
        assert set(spec) == {"customer_name"}
        assert spec["customer_name"] != "Jane"

    def test_missing_to_anonymize(self, engine):
        with pytest.raises(ContractError) as exc_info:
            engine.rewrite(Legacy(id=1, secret="s"))
        assert "Legacy" in str(exc_info.value)
        assert "not implemented" in str(exc_info.value)

    def test_non_mapping_result(self, engine, monkeypatch):
        monkeypatch.setattr(Order, "to_anonymize", lambda self, faker: ["not", "a", "dict"])
        with pytest.raises(ContractError, match="must return a mapping"):
            engine.rewrite(Order(id=1, customer_name="Jane"))


class TestApply:
    """Test writing rewrites to the database."""

    def _anonymize_all(self, engine, model):
        engine.for_each_chunk(model, engine.anonymize_chunk)

    def test_scalar_fields_written(self, engine, session_factory):
        add_users(session_factory, 3)
        self._anonymize_all(engine, User)
        for user in all_rows(session_factory, User):
            assert user.name != f"user-{user.id}"
            assert user.email != f"user{user.id}@example.com"

    def test_relation_values_applied_to_all_related_rows(self, engine, session_factory):
        add_users(session_factory, 3, posts_per_user=2)
        self._anonymize_all(engine, User)
        posts = all_rows(session_factory, Post)
        assert len(posts) == 6
        assert all(p.body == "[redacted]" for p in posts)

    def test_related_rows_updated_before_parent(self, engine, session_factory, db):
        add_users(session_factory, 1, posts_per_user=1)
        statements = []

        def record(conn, cursor, statement, parameters, context, executemany):
            if statement.startswith("UPDATE"):
                statements.append(statement.split()[1])

        event.listen(db.engine, "before_cursor_execute", record)
        try:
            self._anonymize_all(engine, User)
        finally:
            event.remove(db.engine, "before_cursor_execute", record)

        assert statements == ["posts", "users"]

    def test_relations_key_not_written_to_parent(self, engine, session_factory):
        add_users(session_factory, 1)
        spec = {"name": "X", "relations": {"posts": {"body": "y"}}}
        with session_factory.begin() as session:
            engine.apply(session, session.get(User, 1), spec)
        # Caller's mapping is left untouched
        assert "relations" in spec
        user = all_rows(session_factory, User)[0]
        assert user.name == "X"
        assert not hasattr(user, "relations")

    def test_soft_deleted_rows_anonymized(self, engine, session_factory):
        add_users(session_factory, 4, posts_per_user=1, deleted={1, 3})
        with session_factory.begin() as session:
            session.get(Post, 2).deleted_at = CREATED
        self._anonymize_all(engine, User)
        assert all(u.name != f"user-{u.id}" for u in all_rows(session_factory, User))
        assert all(p.body == "[redacted]" for p in all_rows(session_factory, Post))

    def test_timestamps_not_touched(self, engine, session_factory):
        add_users(session_factory, 2)
        self._anonymize_all(engine, User)
        assert all(u.updated_at == CREATED for u in all_rows(session_factory, User))

    def test_timestamp_written_when_part_of_rewrite(self, engine, session_factory):
        add_users(session_factory, 1)
        with session_factory.begin() as session:
            engine.apply(session, session.get(User, 1), {"updated_at": None})
        assert all_rows(session_factory, User)[0].updated_at is None

    def test_update_events_not_fired(self, engine, session_factory):
        add_users(session_factory, 2)
        fired = []

        def on_update(mapper, connection, target):
            fired.append(target.id)

        event.listen(User, "before_update", on_update)
        try:
            self._anonymize_all(engine, User)
        finally:
            event.remove(User, "before_update", on_update)
        assert fired == []

    def test_unknown_field(self, engine, session_factory):
        add_rows(session_factory, Ticket, 1, "reporter", "reporter")
        with pytest.raises(ContractError, match="reporter_email"):
            self._anonymize_all(engine, Ticket)

    def test_unknown_relation(self, engine, session_factory):
        add_users(session_factory, 1)
        with session_factory.begin() as session:
            with pytest.raises(ContractError, match="comments"):
                engine.apply(session, session.get(User, 1), {"relations": {"comments": {"x": 1}}})

    def test_unknown_field_on_relation(self, engine, session_factory):
        add_users(session_factory, 1, posts_per_user=1)
        with session_factory.begin() as session:
            with pytest.raises(ContractError, match="title"):
                engine.apply(session, session.get(User, 1), {"relations": {"posts": {"title": "x"}}})

    def test_rerun_is_safe(self, engine, session_factory):
        """Anonymizing already-anonymized data works and yields new values."""
        add_users(session_factory, 5, posts_per_user=1)
        self._anonymize_all(engine, User)
        first = {u.id: u.name for u in all_rows(session_factory, User)}
        self._anonymize_all(engine, User)
        second = {u.id: u.name for u in all_rows(session_factory, User)}
        assert set(second) == set(first)
        assert all(name for name in second.values())
        assert second != first
