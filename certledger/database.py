"""
Stock Store connection handling with fail-safe features:
- pool_pre_ping=True, bounded pool for PostgreSQL
- one explicitly passed StockStore handle instead of a module-level engine
- bounded lock wait on every transaction (lock_timeout / busy timeout)
- retry on OperationalError for the connection preflight
- full rollback on any exception raised inside a transaction
"""
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, IntegrityError, DBAPIError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Tuple
import logging
import time

from certledger.config import Settings, get_settings
from certledger.errors import DuplicateEntry, LedgerError, PersistenceFailure, Timeout
from certledger.models import Base

logger = logging.getLogger(__name__)

AFTER_COMMIT_KEY = "certledger.after_commit"
# Execution option marking a connection that belongs to StockStore.transaction()
WRITE_TRANSACTION_OPTION = "certledger_write_transaction"

# PostgreSQL SQLSTATEs raised when a lock wait or statement exceeds its timeout
LOCK_TIMEOUT_SQLSTATES = {"55P03", "57014"}
UNIQUE_VIOLATION_SQLSTATE = "23505"

def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")

def build_engine(settings: Settings) -> Engine:
    """Create the engine for the configured DATABASE_URL"""
    url = settings.DATABASE_URL

    if _is_sqlite(url):
        in_memory = url in ("sqlite://", "sqlite:///:memory:")
        engine = create_engine(
            url,
            connect_args={
                "check_same_thread": False,
                "timeout": settings.LOCK_TIMEOUT_SECONDS,
            },
            poolclass=StaticPool if in_memory else QueuePool,
        )

        # SQLite has no row locks: ledger transactions take the database write
        # lock up front so a locked read always observes committed state.
        # Reporting reads use a deferred BEGIN and never wait on a writer.
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            dbapi_connection.execute("PRAGMA foreign_keys=ON")

        @event.listens_for(engine, "begin")
        def _begin(conn):
            if conn.get_execution_options().get(WRITE_TRANSACTION_OPTION):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

        return engine

    if "supabase" in url and "sslmode" not in url:
        url += "?sslmode=require"
        logger.info("Added sslmode=require to DATABASE_URL")

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_pre_ping=True,
        pool_size=settings.POOL_SIZE,
        max_overflow=settings.MAX_OVERFLOW,
        pool_recycle=settings.POOL_RECYCLE,
        pool_timeout=settings.POOL_TIMEOUT,
        echo=False,
    )

def classify_db_error(exc: SQLAlchemyError) -> LedgerError:
    """Map a SQLAlchemy error to the ledger error taxonomy"""
    if isinstance(exc, IntegrityError):
        orig = exc.orig
        sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if sqlstate == UNIQUE_VIOLATION_SQLSTATE or "UNIQUE constraint failed" in str(orig):
            return DuplicateEntry(f"Duplicate entry: {orig}")
        return PersistenceFailure(f"Integrity error: {orig}")

    if isinstance(exc, DBAPIError):
        orig = exc.orig
        sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if sqlstate in LOCK_TIMEOUT_SQLSTATES:
            return Timeout(f"Lock wait exceeded: {orig}")
        if isinstance(exc, OperationalError) and "database is locked" in str(orig):
            return Timeout(f"Lock wait exceeded: {orig}")

    return PersistenceFailure(f"Database error: {exc}")

class StockStore:
    """
    Handle on the relational Stock Store.

    Every ledger component receives one of these explicitly, so tests can
    point each case at an isolated database.
    """

    def __init__(self, settings: Optional[Settings] = None, engine: Optional[Engine] = None):
        self.settings = settings or get_settings()
        self.engine = engine or build_engine(self.settings)
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
            expire_on_commit=False
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def create_all(self):
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self):
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self):
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Plain session for read-only reporting work"""
        db = self.SessionLocal()
        try:
            yield db
        finally:
            # close() ends the transaction without expiring loaded objects
            db.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        One ledger transaction.

        Commits when the block exits normally. Any exception, including
        KeyboardInterrupt or a cancellation raised into the block, rolls the
        whole transaction back and propagates unchanged. Callbacks registered
        with after_commit() run only once the commit has succeeded.
        """
        db = self.SessionLocal()
        db.info[AFTER_COMMIT_KEY] = []
        try:
            db.begin()
            # The option has to be on the connection before it begins
            db.connection(execution_options={WRITE_TRANSACTION_OPTION: True})
            self._apply_timeouts(db)
            yield db
            db.commit()
        except BaseException:
            db.rollback()
            db.info.pop(AFTER_COMMIT_KEY, None)
            db.close()
            raise

        callbacks = db.info.pop(AFTER_COMMIT_KEY, [])
        db.close()
        for callback in callbacks:
            callback()

    def _apply_timeouts(self, db: Session):
        if self.dialect != "postgresql":
            return
        timeout_ms = int(self.settings.LOCK_TIMEOUT_SECONDS * 1000)
        db.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))
        db.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))

    def test_connection(self) -> Tuple[bool, str]:
        """Test database connection with retry on OperationalError"""
        retries = self.settings.CONNECT_RETRIES
        for attempt in range(retries + 1):
            try:
                with self.engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                return True, "Database connection successful"
            except OperationalError as e:
                if attempt == retries:
                    logger.error(f"Database connection failed after {retries + 1} attempts: {e}")
                    return False, f"Database connection failed: {str(e)}"
                logger.warning(f"Database connection attempt {attempt + 1} failed, retrying...")
                time.sleep(1)
        return False, "Database connection test failed"

def after_commit(db: Session, callback: Callable[[], None]) -> bool:
    """
    Run callback after the managed transaction owning db commits.

    Returns False when db is not managed by StockStore.transaction(); the
    caller then has to act immediately.
    """
    callbacks: Optional[List[Callable[[], None]]] = db.info.get(AFTER_COMMIT_KEY)
    if callbacks is None:
        return False
    callbacks.append(callback)
    return True
