"""Shared fixtures: in-memory database, seeded faker, settings."""

import pytest
from faker import Faker
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from db_anon_lib.anonymizer.db import Database
from db_anon_lib.anonymizer.engine import AnonymizationEngine
from db_anon_lib.anonymizer.settings import AnonymizeSettings

from sample_models import Base


@pytest.fixture
def db():
    """Fresh in-memory SQLite database with every sample table."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    database = Database("sqlite://", engine=engine)
    yield database
    database.close()


@pytest.fixture
def session_factory(db):
    return db.session_factory


@pytest.fixture
def faker():
    fake = Faker("en_US")
    fake.seed_instance(1234)
    return fake


@pytest.fixture
def engine(session_factory, faker):
    return AnonymizationEngine(session_factory, faker, chunk_size=10)


@pytest.fixture
def settings():
    return AnonymizeSettings(
        environment="local",
        chunk_size=10,
        seed=42,
        model_packages=[],
        database_url="sqlite://",
    )
