# database.py
import asyncio
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from databases import Database
from sqlalchemy import create_engine, MetaData

from .config import DATABASE_URL, TRANSACTION_RETRIES, get_logger
from .errors import ConflictError

logger = get_logger("fulfillment-service.database")

# async database client
database = Database(DATABASE_URL)

# SQLAlchemy sync engine for metadata.create_all()
SYNC_DATABASE_URL = DATABASE_URL.replace("+asyncpg", "").replace("+aiosqlite", "")
engine = create_engine(SYNC_DATABASE_URL)
metadata = MetaData()

# PostgreSQL serialization_failure / deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation every table stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_transient_conflict(exc: BaseException) -> bool:
    """True for lock/serialization conflicts that a fresh attempt can resolve."""
    if isinstance(exc, sqlite3.OperationalError):
        return "locked" in str(exc) or "busy" in str(exc)
    return getattr(exc, "sqlstate", None) in _RETRYABLE_SQLSTATES


def is_unique_violation(exc: BaseException) -> bool:
    if isinstance(exc, sqlite3.IntegrityError):
        return "UNIQUE" in str(exc)
    return getattr(exc, "sqlstate", None) == "23505"


@asynccontextmanager
async def unit_of_work():
    """
    SQLite takes the write lock up front (BEGIN IMMEDIATE), so concurrent
    writers wait on the busy timeout instead of failing a read-to-write lock
    upgrade. Other stores use the driver's own transaction.
    """
    if database.url.dialect != "sqlite":
        async with database.transaction():
            yield
        return

    async with database.connection() as connection:
        await connection.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            # sqlite may already have rolled back on its own
            if connection.raw_connection.in_transaction:
                await connection.execute("ROLLBACK")
            raise
        await connection.execute("COMMIT")


async def run_in_transaction(work, *args, retries: int = TRANSACTION_RETRIES, **kwargs):
    """
    Run `work` as one atomic unit of work.

    Everything `work` does through `database` shares the task's connection and
    commits or rolls back together. When the store reports a lock or
    serialization conflict the whole unit is re-run from the start, so reads
    are always repeated against committed state. A conflict that outlasts the
    last retry is raised as ConflictError.
    """
    name = getattr(work, "__name__", work)
    for attempt in range(retries):
        try:
            async with unit_of_work():
                return await work(*args, **kwargs)
        except Exception as e:
            if not is_transient_conflict(e):
                raise
            if attempt == retries - 1:
                logger.error(f"[TX CONFLICT] {name} gave up after {retries} attempts: {e}")
                raise ConflictError("The store is busy; please try again") from e
            wait = 0.05 * (2 ** attempt)
            logger.warning(f"[TX RETRY] {name} conflict ({attempt + 1}/{retries}) in {wait:.2f}s: {e}")
            await asyncio.sleep(wait)
