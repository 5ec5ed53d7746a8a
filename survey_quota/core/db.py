from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from .settings import config_settings

DATABASE_URL = config_settings.database_url


def create_db_engine(database_url: str, echo: bool = False, sqlite_timeout: float = 30.0):
    """
    Builds an engine for database_url.

    SQLite transactions are started with BEGIN IMMEDIATE so concurrent
    writers queue on the busy timeout instead of failing with a deadlock.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo)

    # check_same_thread: sessions are handed between threads by the pool
    engine = create_engine(
        database_url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": sqlite_timeout},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


# 1. SQLAlchemy Engine
# The engine manages the connection pool and dialect.
engine = create_db_engine(DATABASE_URL, echo=config_settings.sql_echo)

# 2. SessionLocal
# Each request gets its own session (a unit of work).
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    """Creates all tables that do not exist yet."""
    from survey_quota.models.orm.base import Base
    # Imported so their tables are registered on Base.metadata
    from survey_quota.models.orm import allocation, form, session  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    """
    Dependency that yields a database session for a single request,
    and ensures the session is closed afterward.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        # Ensures the session is closed even if an exception occurs
        db.close()
