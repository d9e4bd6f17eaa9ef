"""
PostgreSQL connection pool management using psycopg3

One pool per store. Every borrow goes through a context manager so the
connection is returned on every exit path, including errors.
"""
import time
from contextlib import contextmanager

from psycopg import OperationalError
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from bisync.core.exceptions import StoreConnectionError
from bisync.core.models import StoreConfig
from bisync.observability.logger import get_logger

logger = get_logger(__name__)


class StorePool:
    """
    PostgreSQL connection pool for one store (origin or cloud)

    Sessions are pinned to UTC so naive timestamp columns and timestamptz
    watermarks compare consistently.
    """

    def __init__(self, config: StoreConfig) -> None:
        """
        Initialize store connection pool

        Args:
            config: Connection settings for the store
        """
        self.config = config
        self.name = config.name

        options = "-c timezone=UTC"
        if config.statement_timeout_ms:
            options += f" -c statement_timeout={config.statement_timeout_ms}"

        self.conninfo = make_conninfo(
            host=config.host,
            port=config.port,
            dbname=config.database,
            user=config.user,
            password=config.password,
            sslmode=config.sslmode,
            connect_timeout=config.connect_timeout,
            application_name="bisync",
            options=options,
        )

        self._pool: ConnectionPool | None = None

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    def open(self, max_retries: int = 3, retry_delay: float = 2.0) -> None:
        """
        Open the connection pool with retry logic.

        Args:
            max_retries: Maximum number of connection attempts
            retry_delay: Delay between retries in seconds

        Raises:
            StoreConnectionError: If the store is unreachable after all retries
        """
        if self._pool is not None:
            return

        last_error: Exception | None = None
        for attempt in range(1, max_retries + 1):
            pool = ConnectionPool(
                conninfo=self.conninfo,
                min_size=self.config.min_size,
                max_size=self.config.max_size,
                timeout=self.config.pool_timeout,
                max_idle=self.config.idle_timeout,
                kwargs={"row_factory": dict_row},
                open=False,
            )
            try:
                pool.open(wait=True, timeout=self.config.connect_timeout + self.config.pool_timeout)
                # min_size=0 never connects while opening, so prove the store is reachable
                with pool.connection() as conn:
                    conn.execute("SELECT 1")
                self._pool = pool
                logger.info(
                    f"Opened {self.name} connection pool",
                    extra={"store": self.name, "host": self.config.host, "attempt": attempt},
                )
                return
            except (OperationalError, PoolTimeout) as e:
                pool.close()
                last_error = e
                logger.warning(
                    f"Connection attempt {attempt}/{max_retries} to {self.name} store failed: {e}",
                    extra={"store": self.name, "attempt": attempt},
                )
                if attempt < max_retries:
                    time.sleep(retry_delay)

        raise StoreConnectionError(
            self.name,
            f"Failed to connect after {max_retries} attempts: {last_error}",
        ) from last_error

    def close(self) -> None:
        """Close the connection pool"""
        if self._pool is not None:
            self._pool.close()
            self._pool = None
            logger.info(f"Closed {self.name} connection pool", extra={"store": self.name})

    @contextmanager
    def get_connection(self):
        """
        Borrow a connection from the pool

        The pool commits on clean exit and rolls back if the block raises.

        Yields:
            psycopg.Connection: Database connection

        Raises:
            RuntimeError: If pool is not open
            StoreConnectionError: If no connection becomes available in time
        """
        if self._pool is None:
            raise RuntimeError(f"The {self.name} connection pool is not open. Call open() first.")

        try:
            with self._pool.connection() as conn:
                yield conn
        except PoolTimeout as e:
            raise StoreConnectionError(self.name, f"No connection available: {e}") from e

    @contextmanager
    def get_cursor(self):
        """
        Get a cursor from a pooled connection

        Yields:
            psycopg.Cursor: Database cursor
        """
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                yield cur

    def execute_query(self, query, params: tuple | dict | None = None) -> list[dict]:
        """
        Execute a SELECT query and return results

        Args:
            query: SQL SELECT query (string or psycopg.sql.Composable)
            params: Query parameters (optional)

        Returns:
            List of dictionaries (one per row)
        """
        with self.get_cursor() as cur:
            cur.execute(query, params)
            return cur.fetchall()

    def execute_command(self, command, params: tuple | dict | None = None) -> int:
        """
        Execute an INSERT/UPDATE/DELETE/DDL command and commit

        Args:
            command: SQL command
            params: Command parameters (optional)

        Returns:
            Number of rows affected
        """
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(command, params)
                rowcount = cur.rowcount
            conn.commit()
            return rowcount

    def __enter__(self):
        """Context manager entry"""
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit"""
        self.close()
        return False
