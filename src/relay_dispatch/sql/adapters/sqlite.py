# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite backend on aiosqlite, the default store."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager

import aiosqlite

from ...errors import StoreUnavailableError
from .base import DbAdapter, Params, Row


def _as_dicts(cursor: aiosqlite.Cursor, rows: Sequence[tuple]) -> list[Row]:
    columns = [c[0] for c in cursor.description or ()]
    return [dict(zip(columns, row, strict=True)) for row in rows]


class _SqliteTransaction:
    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def fetch_returning(self, query: str, params: Params | None = None) -> list[Row]:
        async with self._db.execute(query, params or {}) as cursor:
            return _as_dicts(cursor, await cursor.fetchall())


class SqliteAdapter(DbAdapter):
    """One short-lived connection per operation.

    SQLite has no row locks: a single ``UPDATE``/``DELETE ... RETURNING``
    statement holds the database write lock for its whole duration, so claims
    and consumes issued from several connections or processes are serialized
    and never overlap. ``busy_timeout`` makes a concurrent writer wait for the
    lock instead of failing with ``database is locked``.

    Note:
        ``:memory:`` gives every operation a fresh empty database. Use a file
        path for anything that must persist between calls.
    """

    skip_locked = ""

    def __init__(self, db_path: str, busy_timeout: float = 30.0):
        self.db_path = db_path or ":memory:"
        self.busy_timeout = busy_timeout

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=self.busy_timeout)

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def execute(self, query: str, params: Params | None = None) -> int:
        try:
            async with self._connect() as db:
                cursor = await db.execute(query, params or {})
                await db.commit()
                return cursor.rowcount
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"SQLite execute failed: {exc}") from exc

    async def execute_many(self, query: str, params_list: Sequence[Params]) -> int:
        try:
            async with self._connect() as db:
                await db.executemany(query, params_list)
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"SQLite executemany failed: {exc}") from exc
        return len(params_list)

    async def fetch_one(self, query: str, params: Params | None = None) -> Row | None:
        try:
            async with self._connect() as db, db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
                return _as_dicts(cursor, [row])[0] if row is not None else None
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"SQLite query failed: {exc}") from exc

    async def fetch_all(self, query: str, params: Params | None = None) -> list[Row]:
        try:
            async with self._connect() as db, db.execute(query, params or {}) as cursor:
                return _as_dicts(cursor, await cursor.fetchall())
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"SQLite query failed: {exc}") from exc

    async def fetch_returning(self, query: str, params: Params | None = None) -> list[Row]:
        try:
            async with self._connect() as db:
                async with db.execute(query, params or {}) as cursor:
                    changed = _as_dicts(cursor, await cursor.fetchall())
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"SQLite write failed: {exc}") from exc
        return changed

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_SqliteTransaction]:
        """Hold the database write lock from the first statement to commit.

        ``BEGIN IMMEDIATE`` takes the lock up front, so a concurrent writer
        waits for the whole block instead of interleaving with it.
        """
        try:
            async with self._connect() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    yield _SqliteTransaction(db)
                except BaseException:
                    await db.rollback()
                    raise
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"SQLite transaction failed: {exc}") from exc

    async def execute_script(self, script: str) -> None:
        try:
            async with self._connect() as db:
                await db.executescript(script)
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"SQLite script failed: {exc}") from exc
