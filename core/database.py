from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool
from typing import Callable, Generator, Optional, Tuple, TypeVar
from dotenv import load_dotenv
import os
import logging

from core.errors import PersistenceConflictError

# ============================================================
# ✅ Load environment variables
# ============================================================
load_dotenv()
logger = logging.getLogger(__name__)

T = TypeVar("T")

# ============================================================
# ✅ Database URL setup (PostgreSQL preferred)
# ============================================================
DATABASE_URL = os.getenv("DATABASE_URL")

if not DATABASE_URL:
    # Fallback for local dev (sqlite)
    DATABASE_URL = "sqlite:///./boxbilling.db"
    logger.warning("⚠️ DATABASE_URL not found — using local SQLite database.")
else:
    logger.info("✅ Using database from environment")


# ============================================================
# ✅ Create SQLModel engine
# ============================================================
def make_engine(url: str, echo: bool = False) -> Engine:
    """
    Build an engine for the given URL.

    SQLite gets thread sharing and working SAVEPOINTs (pysqlite otherwise
    manages transactions itself and breaks begin_nested). In-memory SQLite
    shares a single connection so every session sees the same database.
    """
    if not url.startswith("sqlite"):
        # For PostgreSQL, pool_pre_ping avoids stale connections
        return create_engine(url, echo=echo, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool

    sqlite_engine = create_engine(url, echo=echo, **kwargs)

    @event.listens_for(sqlite_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return sqlite_engine


engine = make_engine(DATABASE_URL)


# ============================================================
# ✅ Create tables (called at startup)
# ============================================================
def create_db_and_tables(bind: Optional[Engine] = None) -> None:
    """
    Create all database tables based on SQLModel models.
    This runs automatically at app startup.
    """
    # Table classes must be registered on the metadata first
    import models.models  # noqa: F401

    try:
        SQLModel.metadata.create_all(bind or engine)
        logger.info("✅ All database tables created successfully.")
    except Exception as e:
        logger.error(f"❌ Failed to create tables: {e}")
        raise


# ============================================================
# ✅ Dependency: FastAPI session generator
# ============================================================
def get_session() -> Generator[Session, None, None]:
    """
    Provides a SQLModel Session to FastAPI dependencies.
    Closes automatically after request completes.
    """
    with Session(engine) as session:
        yield session


# ============================================================
# 🔁 Conflict-aware insert
# ============================================================
def insert_or_get_existing(
    session: Session,
    obj: T,
    lookup: Callable[[], Optional[T]],
) -> Tuple[T, bool]:
    """
    Insert ``obj`` inside a SAVEPOINT.

    Returns ``(row, was_existing)``. When a unique constraint rejects the
    insert, the row that won is fetched with ``lookup`` and returned instead.
    If nothing can be found the conflict is real and is raised.
    """
    try:
        with session.begin_nested():
            session.add(obj)
            session.flush()
        return obj, False
    except IntegrityError as e:
        existing = lookup()
        if existing is None:
            raise PersistenceConflictError(
                f"Insert of {type(obj).__name__} conflicted and no existing row was found",
                {"detail": str(e.orig)},
            ) from e
        logger.info(f"♻️ {type(obj).__name__} already exists — returning existing row")
        return existing, True
