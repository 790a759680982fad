"""
PostgreSQL Connection Management

Pooled psycopg2 connections shared by the member store and the Postgres
key-value store. Operations run through execute_with_retry(), which retries
once on a stale connection and converts every database failure into a
DataStoreError.
"""

import os
import logging
from typing import Callable, Optional
from contextlib import contextmanager

from .errors import DataStoreError

try:
    import psycopg2
    import psycopg2.extras
    import psycopg2.pool
except ImportError:
    psycopg2 = None  # Will be caught at connect() time

logger = logging.getLogger(__name__)


class PostgresConnectionManager:
    """
    Threaded connection pool with stale-connection recovery.

    Usage:
        db = PostgresConnectionManager()
        db.connect()
        count = db.execute_with_retry(lambda conn: ..., label="count_members")
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        min_connections: int = 2,
        max_connections: int = 20,
    ):
        self._pool = None
        self._min = min_connections
        self._max = max_connections
        self._connection_string = (
            connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL") or
            "postgresql://localhost:5432/member_search"
        )

    def connect(self) -> None:
        """Create the connection pool."""
        if psycopg2 is None:
            raise ImportError("psycopg2 not installed. Run: pip install psycopg2-binary")

        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=self._min,
                maxconn=self._max,
                dsn=self._connection_string,
                cursor_factory=psycopg2.extras.RealDictCursor,
            )
            logger.info(f"Connection pool initialized (min={self._min}, max={self._max})")
        except psycopg2.Error as e:
            logger.error(f"Database connection failed: {e}")
            raise DataStoreError(f"Database connection failed: {e}", cause=e)

    def is_connected(self) -> bool:
        return self._pool is not None

    def _get_connection(self):
        if self._pool is None:
            self.connect()
        return self._pool.getconn()

    def _release_connection(self, conn) -> None:
        if self._pool is not None and conn is not None:
            try:
                self._pool.putconn(conn)
            except psycopg2.pool.PoolError as e:
                logger.debug(f"Connection not returned to pool: {e}")

    @contextmanager
    def get_connection(self):
        """
        Context manager for a pooled connection.

        Automatically releases the connection back to the pool when done.
        """
        conn = self._get_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def execute_with_retry(self, operation: Callable, label: str = "db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.

        Raises:
            DataStoreError: the operation failed, or failed twice on stale connections
        """
        for attempt in range(2):
            try:
                conn = self._get_connection()
            except psycopg2.Error as e:
                raise DataStoreError(f"{label}: could not get a connection: {e}", cause=e)

            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                if attempt == 0 and not isinstance(e, psycopg2.extensions.QueryCanceledError):
                    logger.warning(f"{label}: stale conn, retrying: {e}")
                    continue
                logger.error(f"{label} failed: {e}")
                raise DataStoreError(f"{label} failed: {e}", cause=e)
            except psycopg2.Error as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                logger.error(f"{label} failed: {e}")
                raise DataStoreError(f"{label} failed: {e}", cause=e)
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def health_check(self) -> bool:
        def _ping(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                return True

        try:
            return self.execute_with_retry(_ping, label="health_check")
        except DataStoreError:
            return False

    def close(self) -> None:
        """Close all pooled connections."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
