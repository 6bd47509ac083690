import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base

from library_lending.config import settings


logger = logging.getLogger(__name__)

Base = declarative_base()

# Execution option asking the SQLite "begin" hook for the write lock up front.
WRITE_LOCK_OPTION = "sqlite_write_lock"


def configure_sqlite(engine: Engine) -> Engine:
    """
    Take over transaction control for SQLite engines.

    pysqlite normally defers BEGIN until the first write, so two sessions can
    both read a book row and then race to upgrade their lock. Here every
    transaction is begun explicitly: units of work flagged with
    WRITE_LOCK_OPTION start with BEGIN IMMEDIATE and queue behind each other on
    the database write lock (bounded by the busy timeout), everything else
    starts a plain deferred BEGIN. WAL mode keeps those readers from blocking
    a writer's commit.

    Non-SQLite engines are returned untouched; they rely on the row locks
    taken by the conditional UPDATE / SELECT ... FOR UPDATE statements.
    """
    if engine.dialect.name != "sqlite":
        return engine

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(WRITE_LOCK_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")

    return engine


def build_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {
            "check_same_thread": False,
            "timeout": settings.SQLITE_BUSY_TIMEOUT,
        }
    return configure_sqlite(create_engine(url, connect_args=connect_args))


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """
    Dependency function that provides a database session.

    One session per request; mutating operations run their own units of
    work on it, and the session is always closed afterwards.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session):
    """
    Run the enclosed writes as one transaction: commit on success, roll back
    on any exception and re-raise.

    Any transaction already open on the session (e.g. from an earlier read)
    is committed first so the unit of work begins on a fresh transaction that
    holds the write lock from its first statement.
    """
    if db.in_transaction():
        db.commit()
    db.connection(execution_options={WRITE_LOCK_OPTION: True})
    try:
        yield db
        db.commit()
    except Exception:
        logger.debug("Rolling back unit of work", exc_info=True)
        db.rollback()
        raise
