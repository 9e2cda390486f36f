from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Sequence

import aiosqlite

from ..errors import QueryTimeout, StoreUnavailable
from ..logging import get_logger

logger = get_logger("chatvault.store.fetch")

RawRow = Dict[str, Any]


@dataclass(frozen=True)
class StoreQuery:
    """A fully bound, read-only statement plus a label used in logs."""

    sql: str
    params: Sequence[Any] = ()
    label: str = "query"


RowFetcher = Callable[[StoreQuery, str], Awaitable[List[RawRow]]]


def read_only_uri(store_path: str) -> str:
    return f"{Path(store_path).expanduser().resolve().as_uri()}?mode=ro"


class SqliteRowFetcher:
    """Runs one statement per call against a read-only connection.

    Each call opens its own connection so nothing is held across requests,
    and each call is bounded by ``timeout`` seconds.
    """

    def __init__(self, timeout: float = 15.0) -> None:
        self._timeout = timeout

    async def __call__(self, query: StoreQuery, store_path: str) -> List[RawRow]:
        try:
            return await asyncio.wait_for(self._run(query, store_path), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("store_query_timeout", label=query.label, timeout=self._timeout)
            raise QueryTimeout(f"{query.label} exceeded {self._timeout:.1f}s") from exc
        except (sqlite3.Error, OSError) as exc:
            logger.error("store_query_failed", label=query.label, store_path=store_path, error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    async def _run(self, query: StoreQuery, store_path: str) -> List[RawRow]:
        if not Path(store_path).expanduser().exists():
            raise StoreUnavailable(f"chat.db not found at {store_path}")
        async with aiosqlite.connect(read_only_uri(store_path), uri=True) as conn:
            conn.row_factory = aiosqlite.Row
            async with conn.execute(query.sql, tuple(query.params)) as cursor:
                rows = await cursor.fetchall()
        logger.debug("store_query_completed", label=query.label, rows=len(rows))
        return [dict(row) for row in rows]


__all__ = ["RawRow", "RowFetcher", "SqliteRowFetcher", "StoreQuery", "read_only_uri"]
