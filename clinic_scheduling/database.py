# clinic_scheduling/database.py
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from .config import get_settings

# Base class for models
Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """Create an engine whose transactions serialize competing bookings.

    PostgreSQL bookings rely on ``SELECT ... FOR UPDATE`` row locks. SQLite
    ignores FOR UPDATE, so every SQLite transaction is opened with
    ``BEGIN IMMEDIATE`` instead, which takes the database write lock up front.
    """
    settings = get_settings()
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": settings.database_busy_timeout},
            echo=False,
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            # pysqlite's own BEGIN handling would defer the lock
            dbapi_connection.isolation_level = None
            dbapi_connection.execute("PRAGMA foreign_keys=ON")

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=settings.database_pool_size,
        pool_timeout=settings.database_pool_timeout,
        connect_args={"options": f"-c statement_timeout={settings.database_statement_timeout_ms}"},
        echo=False,
    )


engine = build_engine(get_settings().database_url)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# Dependency to get database session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind: Engine = None):
    """Create all database tables - models must be imported first"""
    from . import models  # registers the tables on Base.metadata

    Base.metadata.create_all(bind=bind or engine)