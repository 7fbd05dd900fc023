# ===================================================================
# HarborList Billing - Base Repository
# Abstract base class for all repositories
# ===================================================================
"""
Repository Pattern Implementation.

Every write that guards a billing invariant is a single conditional
statement (``UPDATE ... WHERE <expected state>`` or
``INSERT ... ON CONFLICT DO NOTHING``). A statement that matches no row
means the caller lost a race; repositories report that as ``None`` and
never retry on their own.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar
import logging
import re

from .connection import DatabasePool

logger = logging.getLogger("harbor_billing.database")

T = TypeVar('T')

_PLACEHOLDER = re.compile(r"\$(\d+)")


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


class BaseRepository(ABC, Generic[T]):
    """
    Abstract base repository with common CRUD operations.

    Example:
        class TransactionRepository(BaseRepository[Transaction]):
            table_name = "transactions"

            async def get_by_processor_transaction_id(self, processor_id):
                row = await self.pool.fetchrow(
                    f"SELECT * FROM {self.table_name} WHERE processor_transaction_id = $1",
                    processor_id
                )
                return self._record_to_entity(row) if row else None
    """

    table_name: str = ""
    has_updated_at: bool = True

    def __init__(self, pool: DatabasePool):
        self.pool = pool

        if not self.table_name:
            raise ValueError(f"{self.__class__.__name__} must define table_name")

    # ===================================================================
    # Abstract Methods
    # ===================================================================

    @abstractmethod
    def _record_to_entity(self, record: Any) -> Optional[T]:
        """Convert an asyncpg Record to an entity."""

    @abstractmethod
    def _entity_to_dict(self, entity: T) -> Dict[str, Any]:
        """Convert an entity to a column -> value mapping."""

    # ===================================================================
    # Query Builders
    # ===================================================================

    @staticmethod
    def _prepare(values: Dict[str, Any]) -> Dict[str, Any]:
        return {key: _to_db(value) for key, value in values.items()}

    def _insert_sql(self, columns: Sequence[str], on_conflict: Optional[str] = None) -> str:
        placeholders = [f"${i + 1}" for i in range(len(columns))]
        conflict = f"ON CONFLICT {on_conflict} DO NOTHING" if on_conflict else ""
        return f"""
            INSERT INTO {self.table_name} ({', '.join(columns)})
            VALUES ({', '.join(placeholders)})
            {conflict}
            RETURNING *
        """

    def _update_sql(
        self,
        id: str,
        updates: Dict[str, Any],
        condition: str,
        condition_args: Sequence[Any],
    ) -> Tuple[str, List[Any]]:
        """
        Build ``UPDATE ... SET ... WHERE id = $n AND <condition>``.

        ``condition`` numbers its placeholders from ``$1``; they are
        shifted past the SET values and the id.
        """
        prepared = self._prepare(updates)
        if self.has_updated_at and "updated_at" not in prepared:
            prepared["updated_at"] = datetime.now(timezone.utc)

        set_clauses = [f"{key} = ${i + 1}" for i, key in enumerate(prepared)]
        id_index = len(prepared) + 1

        where = f"id = ${id_index}"
        if condition:
            shifted = _PLACEHOLDER.sub(lambda m: f"${int(m.group(1)) + id_index}", condition)
            where += f" AND ({shifted})"

        query = f"""
            UPDATE {self.table_name}
            SET {', '.join(set_clauses)}
            WHERE {where}
            RETURNING *
        """
        return query, [*prepared.values(), id, *condition_args]

    # ===================================================================
    # Common Operations
    # ===================================================================

    async def get_by_id(self, id: str) -> Optional[T]:
        row = await self.pool.fetchrow(f"SELECT * FROM {self.table_name} WHERE id = $1", id)
        return self._record_to_entity(row) if row else None

    async def create(self, entity: T) -> T:
        """
        Insert a new entity.

        Raises:
            asyncpg.UniqueViolationError: On a unique constraint conflict
        """
        data = self._prepare(self._entity_to_dict(entity))
        row = await self.pool.fetchrow(self._insert_sql(list(data)), *data.values())
        return self._record_to_entity(row)

    async def create_if_absent(self, entity: T, conflict_target: str) -> Optional[T]:
        """
        Insert unless ``conflict_target`` already matches a row.

        Returns:
            The created entity, or None when another row already exists
        """
        data = self._prepare(self._entity_to_dict(entity))
        row = await self.pool.fetchrow(
            self._insert_sql(list(data), on_conflict=conflict_target),
            *data.values()
        )
        return self._record_to_entity(row) if row else None

    async def update(self, id: str, updates: Dict[str, Any]) -> Optional[T]:
        """Unconditional update of the given columns."""
        return await self.conditional_update(id, updates)

    async def conditional_update(
        self,
        id: str,
        updates: Dict[str, Any],
        condition: str = "",
        *condition_args: Any,
    ) -> Optional[T]:
        """
        Update a row only if ``condition`` holds at write time.

        Args:
            id: Entity id
            updates: Column values to set
            condition: SQL predicate with its own ``$1..$n`` placeholders
            *condition_args: Values for the predicate placeholders

        Returns:
            Updated entity, or None when the row is missing or the
            condition no longer holds
        """
        query, args = self._update_sql(id, updates, condition, condition_args)
        row = await self.pool.fetchrow(query, *args)
        if row is None:
            logger.debug(f"Conditional update on {self.table_name} {id} matched no row")
        return self._record_to_entity(row) if row else None

    async def fetch_entities(self, query: str, *args) -> List[T]:
        rows = await self.pool.fetch(query, *args)
        return [self._record_to_entity(row) for row in rows if row]

    async def fetch_entity(self, query: str, *args) -> Optional[T]:
        row = await self.pool.fetchrow(query, *args)
        return self._record_to_entity(row) if row else None
