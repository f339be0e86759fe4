"""Base repository pattern for database operations.

Provides the criteria-based reads, inserts and deletes shared by
relational stores. Column names are whitelisted per repository so that
criteria coming from callers can never inject SQL.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Mapping, Optional, Sequence, Tuple, TypeVar

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError):
    """Entity not found in storage."""
    pass


class DuplicateError(RepositoryError):
    """Duplicate entity already exists."""
    pass


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository with common operations.

    Subclasses declare ``columns`` (the first one is the primary key) and
    implement the row/entity conversions.
    """

    columns: Tuple[str, ...] = ("id",)

    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str,
    ):
        self.connection_manager = connection_manager
        self.table_name = table_name

        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={"table_name": table_name}
        )

    @property
    def primary_key(self) -> str:
        return self.columns[0]

    @abstractmethod
    def _row_to_entity(self, row: tuple) -> T:
        """Convert a database row (ordered as ``columns``) to an entity."""
        pass

    @abstractmethod
    def _entity_to_params(self, entity: T) -> Dict[str, Any]:
        """Convert an entity to column values, excluding the primary key."""
        pass

    def _check_column(self, column: str) -> str:
        if column not in self.columns:
            raise ValueError(f"Unknown column for {self.table_name}: {column}")
        return column

    def _select_sql(self) -> str:
        return f"SELECT {', '.join(self.columns)} FROM {self.table_name}"

    def _where_clause(
        self,
        criteria: Optional[Mapping[str, Any]] = None,
        conditions: Sequence[Tuple[str, str, Any]] = (),
    ) -> Tuple[str, List[Any]]:
        """Build a WHERE clause from equality criteria and extra conditions.

        Args:
            criteria: column -> expected value; ``None`` becomes IS NULL
            conditions: (column, operator, value) triples such as
                ("version", "<=", 3)

        Returns:
            (sql fragment, params) - fragment is empty when nothing filters
        """
        parts = []
        params: List[Any] = []

        for column, value in (criteria or {}).items():
            self._check_column(column)
            if value is None:
                parts.append(f"{column} IS NULL")
            else:
                parts.append(f"{column} = %s")
                params.append(value)

        for column, operator, value in conditions:
            self._check_column(column)
            if operator not in ("=", "<", "<=", ">", ">="):
                raise ValueError(f"Unsupported operator: {operator}")
            parts.append(f"{column} {operator} %s")
            params.append(value)

        if not parts:
            return "", params
        return " WHERE " + " AND ".join(parts), params

    def find_where(
        self,
        criteria: Optional[Mapping[str, Any]] = None,
        conditions: Sequence[Tuple[str, str, Any]] = (),
        order_by: Sequence[Tuple[str, str]] = (),
        limit: Optional[int] = None,
    ) -> List[T]:
        """Find entities matching criteria.

        Args:
            criteria: Equality criteria (column -> value)
            conditions: Extra comparison conditions
            order_by: (column, "ASC" | "DESC") pairs
            limit: Maximum entities to return
        """
        where, params = self._where_clause(criteria, conditions)
        query = self._select_sql() + where

        if order_by:
            clauses = []
            for column, direction in order_by:
                direction = direction.upper()
                if direction not in ("ASC", "DESC"):
                    raise ValueError(f"Unsupported sort direction: {direction}")
                clauses.append(f"{self._check_column(column)} {direction}")
            query += " ORDER BY " + ", ".join(clauses)

        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall()

                return [self._row_to_entity(row) for row in rows]

    def _insert(self, cur, entity: T) -> Any:
        """Insert entity using an open cursor, returning the new primary key."""
        params = self._entity_to_params(entity)
        columns = [self._check_column(col) for col in params]
        placeholders = ", ".join(["%s"] * len(columns))

        cur.execute(
            f"INSERT INTO {self.table_name} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) RETURNING {self.primary_key}",
            list(params.values()),
        )
        row = cur.fetchone()
        return row[0] if row else None

    def update_by_id(self, entity_id: Any, values: Mapping[str, Any]) -> bool:
        """Update columns of one entity.

        Returns:
            True if a row was updated
        """
        if not values:
            return False

        assignments = ", ".join(f"{self._check_column(col)} = %s" for col in values)

        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE {self.table_name} SET {assignments} "
                    f"WHERE {self.primary_key} = %s",
                    list(values.values()) + [entity_id],
                )
                return cur.rowcount > 0

    def delete_by_id(self, entity_id: Any) -> bool:
        """Delete entity by primary key.

        Returns:
            True if deleted, False if not found
        """
        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"DELETE FROM {self.table_name} WHERE {self.primary_key} = %s",
                    (entity_id,)
                )
                return cur.rowcount > 0

    def delete_all(self) -> int:
        """Delete every row, returning how many were removed."""
        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self.table_name}")
                return cur.rowcount

    def count(self, criteria: Optional[Mapping[str, Any]] = None) -> int:
        """Count entities matching optional equality criteria."""
        where, params = self._where_clause(criteria)

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(*) FROM {self.table_name}{where}", params)
                row = cur.fetchone()

                return row[0] if row else 0
