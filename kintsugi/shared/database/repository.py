"""Table-backed repositories for the moderation store.

A repository maps one table to one entity type. Subclasses list their
columns (rows are read in that order) and convert between rows and
entities; queries, ordering and inserts live here.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors."""


class NotFoundError(RepositoryError):
    """Row the caller relied on does not exist."""


class DuplicateError(RepositoryError):
    """Insert hit an existing primary key."""


class BaseRepository(ABC, Generic[T]):
    """Reads and append-style writes over a single table.

    Every table served this way has an ``id`` primary key and a
    ``created_at`` column, which orders listings.
    """

    columns: Tuple[str, ...] = ()

    def __init__(self, connection_manager: ConnectionManager, table_name: str):
        self.connection_manager = connection_manager
        self.table_name = table_name

    @abstractmethod
    def _row_to_entity(self, row: tuple) -> T:
        """Build an entity from a row in ``columns`` order."""

    @abstractmethod
    def _entity_to_params(self, entity: T) -> Dict[str, Any]:
        """Column name to value, for inserts."""

    def _select(self, tail: str = "") -> str:
        select_list = ", ".join(self.columns) if self.columns else "*"
        return f"SELECT {select_list} FROM {self.table_name} {tail}".rstrip()

    def _fetch_all(self, where: str = "", params: Sequence[Any] = (), suffix: str = "") -> List[T]:
        query = self._select(" ".join(part for part in (where, suffix) if part))
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, tuple(params))
                rows = cur.fetchall()
        return [self._row_to_entity(row) for row in rows]

    def find_by_id(self, entity_id: str) -> Optional[T]:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(self._select("WHERE id = %s"), (entity_id,))
                row = cur.fetchone()
        return None if row is None else self._row_to_entity(row)

    def find_recent(self, limit: Optional[int] = None, offset: int = 0) -> List[T]:
        """Newest first; every row when ``limit`` is None."""
        if limit is None:
            return self._fetch_all(params=(offset,), suffix="ORDER BY created_at DESC OFFSET %s")
        return self._fetch_all(
            params=(limit, offset),
            suffix="ORDER BY created_at DESC LIMIT %s OFFSET %s",
        )

    def find_oldest_first(self) -> List[T]:
        return self._fetch_all(suffix="ORDER BY created_at ASC")

    def build_insert(self, entity: T) -> Tuple[str, List[Any]]:
        """INSERT for ``entity`` that leaves an existing id untouched.

        Returned rather than executed so a caller can run it inside a
        transaction it controls; a rowcount of 0 means the id existed.
        """
        params = self._entity_to_params(entity)
        query = (
            f"INSERT INTO {self.table_name} ({', '.join(params)}) "
            f"VALUES ({', '.join(['%s'] * len(params))}) "
            "ON CONFLICT (id) DO NOTHING"
        )
        return query, list(params.values())

    def insert(self, entity: T) -> T:
        """Insert and commit ``entity``.

        Raises:
            DuplicateError: If a row with the same id exists
        """
        query, values = self.build_insert(entity)

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, values)
                inserted = cur.rowcount
            conn.commit()

        if inserted == 0:
            logger.warning(
                "REPOSITORY_DUPLICATE_INSERT",
                extra={"table_name": self.table_name, "entity_id": values[0]}
            )
            raise DuplicateError(f"{self.table_name} entity {values[0]} already exists")
        return entity
