import sqlite3
from contextlib import contextmanager

import structlog

from errors import ConcurrencyConflict, IdentityError, StoreError

logger = structlog.get_logger()

DB_NAME = "contacts.db"

SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS Contact (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        phoneNumber TEXT,
        email TEXT,
        linkedId INTEGER,
        linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
        createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        deletedAt DATETIME,
        FOREIGN KEY (linkedId) REFERENCES Contact (id)
    )
    ''',
    "CREATE INDEX IF NOT EXISTS idx_contact_email ON Contact (email)",
    "CREATE INDEX IF NOT EXISTS idx_contact_phone ON Contact (phoneNumber)",
    '''
    CREATE TABLE IF NOT EXISTS DisjointSet (
        rootId INTEGER PRIMARY KEY,
        members TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS DisjointSetMember (
        memberId INTEGER PRIMARY KEY,
        rootId INTEGER NOT NULL
    )
    ''',
    "CREATE INDEX IF NOT EXISTS idx_member_root ON DisjointSetMember (rootId)",
]


def _is_lock_error(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return isinstance(exc, sqlite3.OperationalError) and ("locked" in message or "busy" in message)


def translate_error(exc: sqlite3.Error) -> IdentityError:
    if _is_lock_error(exc):
        return ConcurrencyConflict(f"database busy: {exc}")
    return StoreError(f"database error: {exc}")


class Database:
    def __init__(self, path: str = DB_NAME, timeout: float = 5.0):
        self.path = path
        self.timeout = timeout

    def get_db_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logger.info("Database initialised", path=self.path)

    @contextmanager
    def transaction(self):
        """Yield a connection inside ``BEGIN IMMEDIATE``.

        Commits on success, rolls back on any error. Driver errors come out as
        ``ConcurrencyConflict`` (lock contention) or ``StoreError``.
        """
        try:
            conn = self.get_db_connection()
        except sqlite3.Error as exc:
            raise translate_error(exc) from exc

        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            self._rollback(conn)
            raise translate_error(exc) from exc
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    def execute_query(self, query: str, params=None) -> list[dict]:
        """Run a read-only query and return the rows as dicts."""
        try:
            conn = self.get_db_connection()
        except sqlite3.Error as exc:
            raise translate_error(exc) from exc

        try:
            cursor = conn.cursor()
            if not params:
                cursor.execute(query)
            else:
                cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]
        except sqlite3.Error as exc:
            raise translate_error(exc) from exc
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
