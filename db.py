# db.py

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

DATABASE_URL = "sqlite:///labflow.db"


def create_db_engine(url: str = DATABASE_URL, echo: bool = False):
    """
    Create the SQLModel engine.
    In-memory SQLite gets a single shared connection so every session
    sees the same database.
    """
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(url, echo=echo)


def init_db(engine):
    """
    Create all tables in the database.
    Call this once at application startup.
    """
    import models  # noqa: F401  registers the table metadata

    SQLModel.metadata.create_all(engine)


def get_session(engine):
    """
    Return a new SQLModel Session bound to the engine.
    """
    return Session(engine)


def insert_ignore(session: Session, model, values: dict, conflict_columns) -> bool:
    """
    Insert a row unless one already exists for conflict_columns.
    Runs inside the session's current transaction.

    Returns True when a row was inserted, False when it already existed.
    """
    table = model.__table__
    dialect = session.get_bind().dialect.name

    if dialect in ("sqlite", "postgresql"):
        insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
        stmt = insert(table).values(**values).on_conflict_do_nothing(
            index_elements=list(conflict_columns)
        )
        result = session.connection().execute(stmt)
        return result.rowcount > 0

    # Other stores: check then insert within the same transaction
    criteria = [table.c[column] == values[column] for column in conflict_columns]
    existing = session.connection().execute(select(table.c[conflict_columns[0]]).where(*criteria)).first()
    if existing is not None:
        return False
    session.connection().execute(table.insert().values(**values))
    return True
