# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Contract shared by the SQLite and PostgreSQL store backends.

Queries are written once with ``:name`` placeholders. Each backend translates
them for its driver, commits every write it executes, and wraps driver
failures in :class:`~relay_dispatch.errors.StoreUnavailableError` so callers
handle a single error type whatever the backend.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol

Params = dict[str, Any]
Row = dict[str, Any]


class Transaction(Protocol):
    """Statements issued on the single connection of an open transaction."""

    async def fetch_returning(self, query: str, params: Params | None = None) -> list[Row]: ...


class DbAdapter(ABC):
    """Async access to one dispatch database."""

    skip_locked: str = ""
    """Clause appended to the claim subquery so concurrent claimers skip rows
    another transaction already holds. Empty where the database serializes
    writers itself."""

    def pk_column(self, name: str) -> str:
        return f"{name} INTEGER PRIMARY KEY AUTOINCREMENT"

    @abstractmethod
    async def connect(self) -> None:
        """Prepare the backend (open the pool, check the file is reachable)."""

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def execute(self, query: str, params: Params | None = None) -> int:
        """Run one write statement and return the number of rows it touched."""

    @abstractmethod
    async def execute_many(self, query: str, params_list: Sequence[Params]) -> int:
        """Run one statement per parameter set in a single transaction."""

    @abstractmethod
    async def fetch_one(self, query: str, params: Params | None = None) -> Row | None: ...

    @abstractmethod
    async def fetch_all(self, query: str, params: Params | None = None) -> list[Row]: ...

    @abstractmethod
    async def fetch_returning(self, query: str, params: Params | None = None) -> list[Row]:
        """Run an ``UPDATE``/``DELETE``/``INSERT ... RETURNING`` and commit.

        Claim, consume and retry transitions rely on this being one atomic
        statement: the returned rows are exactly the rows it changed.
        """

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[Transaction]:
        """Open a transaction on one connection.

        Everything run through the yielded :class:`Transaction` commits
        together on clean exit and is rolled back if the block raises, so a
        multi-statement move between tables is all-or-nothing.
        """

    @abstractmethod
    async def execute_script(self, script: str) -> None:
        """Run semicolon-separated DDL, used by ``init_db``."""
