"""PostgreSQL connection pool for the moderation store.

One ThreadedConnectionPool is shared by the repositories of a process.
It is opened on first use, so importing the chat handler with the
in-memory backend never touches the network.

A connection checked out through ``get_connection`` is rolled back if
the caller raises; committing is left to the caller.
"""
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

from psycopg2 import pool

logger = logging.getLogger(__name__)

APPLICATION_NAME = "kintsugi"


@dataclass(frozen=True)
class DatabaseConfig:
    """Where the moderation store lives and how big its pool is.

    When ``dsn`` is set it wins over the individual host fields, which
    are then only used for logging.
    """
    host: str
    port: int = 5432
    database: str = "kintsugi"
    username: str = ""
    password: str = ""
    dsn: str = ""
    min_connections: int = 1
    max_connections: int = 10
    connect_timeout: int = 10
    statement_timeout_ms: int = 5000
    ssl_mode: str = "prefer"

    def __post_init__(self):
        if self.min_connections < 0:
            raise ValueError("min_connections must be >= 0")
        if self.max_connections < max(self.min_connections, 1):
            raise ValueError("max_connections must be >= min_connections and >= 1")
        if self.statement_timeout_ms < 0:
            raise ValueError("statement_timeout_ms must be >= 0")

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Read the store location from the environment.

        DATABASE_URL, when present, is passed to libpq as-is. Otherwise
        DB_HOST, DB_PORT, DB_NAME, DB_USER and DB_PASSWORD are used.
        Pool sizing comes from DB_MIN_CONN / DB_MAX_CONN, and
        DB_STATEMENT_TIMEOUT_MS bounds every query (0 disables it).
        """
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "kintsugi"),
            username=os.getenv("DB_USER", ""),
            password=os.getenv("DB_PASSWORD", ""),
            dsn=os.getenv("DATABASE_URL", ""),
            min_connections=int(os.getenv("DB_MIN_CONN", "1")),
            max_connections=int(os.getenv("DB_MAX_CONN", "10")),
            statement_timeout_ms=int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000")),
            ssl_mode=os.getenv("DB_SSL_MODE", "prefer"),
        )

    def connect_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments handed to psycopg2 for each pooled connection."""
        kwargs: Dict[str, Any] = {
            "connect_timeout": self.connect_timeout,
            "sslmode": self.ssl_mode,
            "application_name": APPLICATION_NAME,
        }
        if self.statement_timeout_ms:
            kwargs["options"] = f"-c statement_timeout={self.statement_timeout_ms}"

        if self.dsn:
            kwargs["dsn"] = self.dsn
        else:
            kwargs.update(
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.username,
                password=self.password,
            )
        return kwargs

    def describe(self) -> Dict[str, Any]:
        """Loggable description; never includes credentials."""
        return {
            "host": self.host,
            "database": self.database,
            "from_dsn": bool(self.dsn),
            "min_connections": self.min_connections,
            "max_connections": self.max_connections,
        }


class ConnectionManager:
    """Lazily opened connection pool with a readiness check."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._pool: Optional[pool.ThreadedConnectionPool] = None
        self._initialized = False

    def initialize(self) -> None:
        """Open the pool. Safe to call more than once."""
        if self._initialized:
            return

        try:
            self._pool = pool.ThreadedConnectionPool(
                self.config.min_connections,
                self.config.max_connections,
                **self.config.connect_kwargs(),
            )
        except Exception as e:
            logger.error(
                "DB_POOL_OPEN_FAILED",
                extra={"error": str(e), **self.config.describe()}
            )
            raise

        self._initialized = True
        logger.info("DB_POOL_OPENED", extra=self.config.describe())

    @contextmanager
    def get_connection(self) -> Iterator[Any]:
        """Check a connection out of the pool for the duration of a block.

        The connection goes back to the pool on exit. If the block
        raises, its open transaction is rolled back first.
        """
        self.initialize()

        conn = self._pool.getconn()
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def health_check(self) -> Dict[str, Any]:
        """Readiness check used by the chat service's /ready endpoint.

        Opens the pool if nothing has used it yet.
        """
        try:
            self.initialize()
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
        except Exception as e:
            logger.error("DB_HEALTH_CHECK_FAILED", extra={"error": str(e)})
            return {"status": "error", "healthy": False, "error": str(e)}

        return {
            "status": "connected",
            "healthy": True,
            "database": self.config.database,
            "max_connections": self.config.max_connections,
        }

    def close(self) -> None:
        """Close every pooled connection; the next use reopens the pool."""
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            logger.info("DB_POOL_CLOSED")
        self._initialized = False


_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Process-wide manager built from the environment on first call."""
    global _connection_manager

    if _connection_manager is None:
        _connection_manager = ConnectionManager(DatabaseConfig.from_env())
    return _connection_manager
