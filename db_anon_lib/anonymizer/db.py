"""SQLAlchemy engine and session factory for anonymization runs."""

from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker

from .contract import install_soft_delete_filter


def make_engine(database_url: str, echo: bool = False) -> Engine:
    return create_engine(database_url, echo=echo)


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory with the soft-delete filter installed.

    autoflush is off: anonymization writes go through explicit UPDATE
    statements, never through the unit of work.
    """
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return install_soft_delete_filter(factory)


class Database:
    """Owns the engine and session factory for one run.

    Usage:
        with Database("sqlite:///app.db") as db:
            pipeline = AnonymizationPipeline(settings, db.session_factory)
    """

    def __init__(self, database_url: str, echo: bool = False, engine: Optional[Engine] = None):
        self.url = database_url
        self.engine = engine if engine is not None else make_engine(database_url, echo=echo)
        self.session_factory = make_session_factory(self.engine)

    @classmethod
    def from_settings(cls, settings) -> "Database":
        return cls(settings.database_url, echo=settings.echo_sql)

    def close(self):
        self.engine.dispose()

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
