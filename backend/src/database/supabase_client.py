"""
Supabase client for database operations.

Exposes the PostgREST primitives the repositories rely on: filtered select
with ordering, insert, upsert with ``on_conflict`` merge, conditional update
returning the affected rows, filtered delete and RPC. Every failure is
raised as ``StoreUnavailableError`` so callers can treat it as a miss;
unique index violations surface as the ``DuplicateRowError`` subclass.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from supabase import AsyncClient, acreate_client

from config import Config

logger = logging.getLogger(__name__)

# (column, operator, value); operator is one of FILTER_OPERATORS
Filter = Tuple[str, str, Any]
# (column, descending)
Order = Tuple[str, bool]

FILTER_OPERATORS = {"eq", "neq", "in", "gt", "gte", "lt", "lte", "is"}


class StoreUnavailableError(Exception):
    """Raised when the durable store is unconfigured or a request fails."""
    pass


class DuplicateRowError(StoreUnavailableError):
    """Raised when a write violates a unique index (Postgres 23505)."""
    pass


UNIQUE_VIOLATION = "23505"


def is_unique_violation(error: Exception) -> bool:
    return getattr(error, "code", None) == UNIQUE_VIOLATION


class SupabaseClient:
    """Client for interacting with Supabase tables over PostgREST."""

    def __init__(self, config: Config):
        self.config = config
        self.client: Optional[AsyncClient] = None
        self._init_lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return self.config.cache_enabled

    async def _get_client(self) -> AsyncClient:
        """Create the async Supabase client on first use."""
        if not self.configured:
            raise StoreUnavailableError("Supabase is not configured")
        if self.client is not None:
            return self.client
        async with self._init_lock:
            if self.client is None:
                try:
                    self.client = await acreate_client(
                        self.config.supabase_url,
                        self.config.store_key,
                    )
                except Exception as e:
                    raise StoreUnavailableError(f"Failed to create Supabase client: {e}") from e
                logger.info("Initialized Supabase client", extra={
                    "url": self.config.supabase_url,
                })
        return self.client

    @staticmethod
    def _apply_filters(query, filters: Iterable[Filter]):
        for column, op, value in filters:
            if op not in FILTER_OPERATORS:
                raise ValueError(f"Unsupported filter operator: {op}")
            if op == "in":
                query = query.in_(column, list(value))
            elif op == "is":
                query = query.is_(column, "null" if value is None else value)
            else:
                query = getattr(query, op)(column, value)
        return query

    async def _execute(self, table: str, action: str, build) -> Any:
        client = await self._get_client()
        try:
            result = await build(client).execute()
        except Exception as e:
            if is_unique_violation(e):
                raise DuplicateRowError(f"{action} on {table} hit a unique index: {e}") from e
            logger.warning("Supabase request failed", extra={
                "table": table,
                "action": action,
                "error": str(e),
            })
            raise StoreUnavailableError(f"{action} on {table} failed: {e}") from e
        return result.data

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        order: Sequence[Order] = (),
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        def build(client: AsyncClient):
            query = self._apply_filters(client.table(table).select(columns), filters)
            for column, desc in order:
                query = query.order(column, desc=desc)
            if limit is not None:
                query = query.limit(limit)
            return query

        return await self._execute(table, "select", build) or []

    async def insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return await self._execute(
            table, "insert", lambda client: client.table(table).insert(rows)
        ) or []

    async def upsert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        on_conflict: str,
        ignore_duplicates: bool = False,
    ) -> List[Dict[str, Any]]:
        return await self._execute(
            table,
            "upsert",
            lambda client: client.table(table).upsert(
                rows, on_conflict=on_conflict, ignore_duplicates=ignore_duplicates
            ),
        ) or []

    async def update(
        self,
        table: str,
        values: Dict[str, Any],
        filters: Sequence[Filter],
    ) -> List[Dict[str, Any]]:
        """Conditional update; returns only the rows that matched every filter."""
        return await self._execute(
            table,
            "update",
            lambda client: self._apply_filters(client.table(table).update(values), filters),
        ) or []

    async def delete(self, table: str, filters: Sequence[Filter]) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        return await self._execute(
            table,
            "delete",
            lambda client: self._apply_filters(client.table(table).delete(), filters),
        ) or []

    async def rpc(self, function_name: str, params: Dict[str, Any]) -> Any:
        return await self._execute(
            function_name, "rpc", lambda client: client.rpc(function_name, params)
        )
