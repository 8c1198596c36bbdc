"""
Database connection and transaction module.

Provides connection pooling and the transaction/savepoint helpers used by
the entitlement store, the lock store and the reconciliation engine.
"""

import logging
from contextlib import contextmanager
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone

from psycopg2 import pool, sql
from psycopg2.extras import RealDictCursor

from config import get_config

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Base exception for database errors."""
    pass


class ConnectionPoolError(DatabaseError):
    """Exception for connection pool errors."""
    pass


class QueryError(DatabaseError):
    """Exception for query execution errors."""
    pass


class DatabaseManager:
    """
    Manages database connections with connection pooling.

    Connections handed out by ``get_connection()`` are plain psycopg2
    connections in their default (transactional) mode; ``transaction()``
    is the unit-of-work boundary the rest of the service relies on.
    """

    def __init__(self):
        """Initialize database manager."""
        self.config = get_config().database
        self._pool: Optional[pool.ThreadedConnectionPool] = None
        self._initialized = False

    def initialize(self) -> None:
        """Initialize connection pool."""
        if self._initialized:
            logger.warning("Database manager already initialized")
            return

        try:
            self._pool = pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=self.config.pool_size,
                host=self.config.host,
                port=self.config.port,
                dbname=self.config.name,
                user=self.config.user,
                password=self.config.password
            )
            self._initialized = True
            logger.info(
                "Database connection pool initialized (host=%s, db=%s)",
                self.config.host, self.config.name,
            )
        except Exception as e:
            logger.error("Failed to initialize connection pool: %s", e)
            raise ConnectionPoolError(f"Connection pool initialization failed: {e}")

    def close(self) -> None:
        """Close all connections in the pool."""
        if self._pool:
            self._pool.closeall()
            self._initialized = False
            logger.info("Database connection pool closed")

    @contextmanager
    def get_connection(self):
        """
        Get a connection from the pool as a context manager.

        Errors raised by the caller's block are re-raised unchanged after
        the open transaction is rolled back.

        Yields:
            psycopg2.connection: Database connection

        Raises:
            ConnectionPoolError: If pool is not initialized or checkout fails
        """
        if not self._initialized:
            self.initialize()

        try:
            conn = self._pool.getconn()
        except Exception as e:
            logger.error("Database connection error: %s", e)
            raise ConnectionPoolError(f"Connection error: {e}")

        try:
            yield conn
        except Exception:
            if not conn.closed:
                conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def transaction(self):
        """
        Run a block inside a single database transaction.

        Commits when the block exits normally and rolls back when it
        raises. A failed commit propagates to the caller.

        Yields:
            psycopg2.connection: Connection bound to the open transaction
        """
        with self.get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def get_cursor(self, dict_cursor: bool = False):
        """
        Get a cursor from a pooled connection.

        Args:
            dict_cursor: If True, return RealDictCursor for dict-like results

        Yields:
            psycopg2.cursor: Database cursor
        """
        with self.get_connection() as conn:
            cursor_factory = RealDictCursor if dict_cursor else None
            cursor = conn.cursor(cursor_factory=cursor_factory)
            try:
                yield cursor
                conn.commit()
            except Exception as e:
                conn.rollback()
                logger.error("Cursor operation error: %s", e)
                raise QueryError(f"Query execution failed: {e}")
            finally:
                cursor.close()

    def execute_query(
        self,
        query: str,
        params: Optional[tuple] = None,
        fetch: bool = False
    ) -> Optional[List[tuple]]:
        """
        Execute a query with optional parameters.

        Args:
            query: SQL query string
            params: Query parameters
            fetch: If True, fetch and return results

        Returns:
            Query results if fetch=True, None otherwise
        """
        with self.get_cursor() as cursor:
            cursor.execute(query, params)
            if fetch:
                return cursor.fetchall()
            return None

    def health_check(self) -> Dict[str, Any]:
        """
        Perform database health check.

        Returns:
            Dict with health status information
        """
        try:
            with self.get_cursor() as cursor:
                cursor.execute("SELECT version();")
                version = cursor.fetchone()[0]

                cursor.execute("SELECT COUNT(*) FROM user_entitlements;")
                user_count = cursor.fetchone()[0]

                return {
                    "status": "healthy",
                    "postgres_version": version,
                    "total_users": user_count,
                    "timestamp": datetime.now(timezone.utc).isoformat()
                }
        except Exception as e:
            logger.error("Health check failed: %s", e)
            return {
                "status": "unhealthy",
                "error": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }


@contextmanager
def savepoint(conn, name: str):
    """
    Scope a block to a SAVEPOINT inside an open transaction.

    A failing statement aborts the whole PostgreSQL transaction unless it
    is rolled back to a savepoint, so per-item work that is allowed to
    fail must run inside one of these. The block's exception is re-raised
    after the rollback.
    """
    ident = sql.Identifier(name)
    cursor = conn.cursor()
    try:
        cursor.execute(sql.SQL("SAVEPOINT {}").format(ident))
        try:
            yield
        except Exception:
            cursor.execute(sql.SQL("ROLLBACK TO SAVEPOINT {}").format(ident))
            raise
        cursor.execute(sql.SQL("RELEASE SAVEPOINT {}").format(ident))
    finally:
        cursor.close()


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Get or create global database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
        _db_manager.initialize()
    return _db_manager


def close_db_manager() -> None:
    """Close global database manager."""
    global _db_manager
    if _db_manager:
        _db_manager.close()
        _db_manager = None
